from __future__ import annotations

import unittest
from types import SimpleNamespace

from db_helpers import PHASE_0, PHASE_1, PHASE_3, PHASE_4, make_session

from procurement.models import GRN, EntityType, GRNResolvedStatus, Order
from procurement.services.audit_service import list_status_changes
from procurement.services.dual_write_service import (
    StatusContext,
    apply_status_update,
    effective_order_status,
    effective_pr_status,
    prepare_status_update,
    transition,
)
from procurement.services.status_model import is_grn_approved


class PrepareStatusUpdateTests(unittest.TestCase):
    def test_order_payloads(self) -> None:
        update = prepare_status_update(
            EntityType.ORDER,
            'ORD-1',
            'APPROVED',
            current_legacy_status='Awaiting approval',
            context=StatusContext(updated_by='admin:42'),
        )
        self.assertTrue(update.validation.valid)
        self.assertEqual(update.legacy_update, {'status': 'Awaiting fulfilment'})
        self.assertEqual(update.unified_update['unified_status'], 'APPROVED')
        self.assertEqual(update.unified_update['unified_status_updated_by'], 'admin:42')
        self.assertIn('unified_status_updated_at', update.unified_update)

    def test_missing_unified_status_is_validated_from_legacy(self) -> None:
        update = prepare_status_update(
            EntityType.ORDER, 'ORD-1', 'DELIVERED', current_legacy_status='Awaiting approval'
        )
        self.assertFalse(update.validation.valid)

    def test_grn_approval_sets_both_legacy_fields_and_acknowledgment(self) -> None:
        update = prepare_status_update(
            EntityType.GRN,
            'GRN-1',
            'APPROVED',
            current_legacy_status='CREATED',
            context=StatusContext(updated_by='company-admin'),
        )
        self.assertEqual(update.legacy_update, {'grn_status': 'APPROVED', 'status': 'ACKNOWLEDGED'})
        self.assertTrue(update.common_update['grn_acknowledged_by_company'])
        self.assertEqual(update.common_update['grn_acknowledged_by'], 'company-admin')

    def test_invoice_rejection_carries_reason(self) -> None:
        update = prepare_status_update(
            EntityType.INVOICE,
            'INV-1',
            'REJECTED',
            current_legacy_status='RAISED',
            context=StatusContext(reason='Wrong amount'),
        )
        self.assertEqual(update.common_update, {'rejection_reason': 'Wrong amount'})

    def test_legacy_extra_fields(self) -> None:
        update = prepare_status_update(
            EntityType.ORDER,
            'ORD-1',
            'DISPATCHED',
            current_unified_status='IN_FULFILMENT',
            legacy_extra={'dispatch_status': 'SHIPPED'},
        )
        self.assertEqual(update.legacy_update, {'status': 'Dispatched', 'dispatch_status': 'SHIPPED'})


class ApplyStatusUpdateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.order = Order(id='ORD-1', pr_number='PR-1', status='Awaiting approval', pr_status='DRAFT')
        self.db.add(self.order)
        self.db.flush()

    def tearDown(self) -> None:
        self.db.close()

    def _approve(self, flags):
        return transition(
            self.db,
            self.order,
            EntityType.ORDER,
            'ORD-1',
            'APPROVED',
            flags,
            context=StatusContext(updated_by='admin:1'),
        )

    def test_phase_zero_writes_legacy_only(self) -> None:
        self._approve(PHASE_0)
        self.assertEqual(self.order.status, 'Awaiting fulfilment')
        self.assertIsNone(self.order.unified_status)

    def test_dual_write_writes_both(self) -> None:
        self._approve(PHASE_1)
        self.assertEqual(self.order.status, 'Awaiting fulfilment')
        self.assertEqual(self.order.unified_status, 'APPROVED')
        self.assertEqual(self.order.unified_status_updated_by, 'admin:1')

    def test_phase_four_writes_unified_only(self) -> None:
        self._approve(PHASE_4)
        self.assertEqual(self.order.status, 'Awaiting approval')
        self.assertEqual(self.order.unified_status, 'APPROVED')

    def test_every_write_is_logged(self) -> None:
        self._approve(PHASE_1)
        self.db.flush()
        logs = list_status_changes(self.db, entity_type=EntityType.ORDER, entity_id='ORD-1')
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].previous_legacy_status, 'Awaiting approval')
        self.assertEqual(logs[0].new_unified_status, 'APPROVED')
        self.assertEqual(logs[0].meta['phase'], 'PHASE_1_DUAL_WRITE_SAFE')
        self.assertTrue(logs[0].meta['validation']['valid'])

    def test_strict_invalid_transition_raises_before_writing(self) -> None:
        update = prepare_status_update(
            EntityType.ORDER, 'ORD-1', 'DELIVERED', current_legacy_status='Awaiting approval'
        )
        with self.assertRaises(ValueError):
            apply_status_update(self.db, self.order, update, PHASE_1)
        self.assertIsNone(self.order.unified_status)
        self.db.flush()
        self.assertEqual(list_status_changes(self.db, entity_type=EntityType.ORDER, entity_id='ORD-1'), [])

    def test_non_strict_invalid_transition_is_written_and_flagged(self) -> None:
        update = prepare_status_update(
            EntityType.PR, 'ORD-1', 'IN_SHIPMENT', current_legacy_status='DRAFT'
        )
        with self.assertLogs('procurement.services.dual_write_service', level='WARNING'):
            apply_status_update(self.db, self.order, update, PHASE_1, strict=False)
        self.assertEqual(self.order.unified_pr_status, 'IN_SHIPMENT')
        self.assertEqual(self.order.pr_status, 'PO_CREATED')
        self.db.flush()
        log = list_status_changes(self.db, entity_type=EntityType.PR, entity_id='ORD-1')[0]
        self.assertFalse(log.meta['validation']['valid'])

    def test_grn_approval_in_unified_only_phase_stays_invoiceable(self) -> None:
        grn = GRN(id='GRN-1', grn_number='GRN-0001', grn_status='RAISED', status='CREATED')
        self.db.add(grn)
        self.db.flush()
        transition(
            self.db,
            grn,
            EntityType.GRN,
            'GRN-1',
            'APPROVED',
            PHASE_4,
            context=StatusContext(updated_by='company-admin'),
        )
        self.assertEqual(grn.status, 'CREATED')
        self.assertEqual(grn.unified_grn_status, 'APPROVED')
        self.assertTrue(grn.grn_acknowledged_by_company)
        self.assertEqual(grn.resolved_status, GRNResolvedStatus.APPROVED)
        self.assertTrue(is_grn_approved(grn))


class EffectiveStatusTests(unittest.TestCase):
    def test_legacy_preferred_until_unified_primary(self) -> None:
        order = SimpleNamespace(
            status='Dispatched', unified_status='DELIVERED', pr_status='PO_CREATED', unified_pr_status='IN_SHIPMENT'
        )
        self.assertEqual(effective_order_status(order, PHASE_1), 'DISPATCHED')
        self.assertEqual(effective_order_status(order, PHASE_3), 'DELIVERED')
        self.assertEqual(effective_pr_status(order, PHASE_1), 'LINKED_TO_PO')
        self.assertEqual(effective_pr_status(order, PHASE_4), 'IN_SHIPMENT')

    def test_falls_back_when_preferred_value_missing(self) -> None:
        legacy_only = SimpleNamespace(status='Delivered', unified_status=None)
        unified_only = SimpleNamespace(status=None, unified_status='CANCELLED')
        self.assertEqual(effective_order_status(legacy_only, PHASE_4), 'DELIVERED')
        self.assertEqual(effective_order_status(unified_only, PHASE_0), 'CANCELLED')


if __name__ == '__main__':
    unittest.main()
