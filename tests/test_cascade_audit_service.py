from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from db_helpers import make_engine, make_session

from procurement.audit_cascade_integrity import run
from procurement.models import Order, Shipment
from procurement.services.cascade_audit_service import (
    RULES,
    AuditCandidate,
    ReadOnlySessionError,
    classify,
    conversion_type,
    find_candidate_orders,
    read_only_sessionmaker,
    run_audit,
    write_report,
)


def _candidate(
    *,
    pr_status=None,
    dispatch_status=None,
    delivery_status=None,
    unified_pr_status=None,
    shipment_status=None,
    has_shipment=False,
    conversion='unknown',
) -> AuditCandidate:
    return AuditCandidate(
        id='ORD-1',
        pr_number='PR-1',
        legacy={
            'status': None,
            'pr_status': pr_status,
            'dispatch_status': dispatch_status,
            'delivery_status': delivery_status,
        },
        unified={'unified_pr_status': unified_pr_status},
        metadata={},
        shipment={'shipment_id': 'SHP-1', 'shipment_status': shipment_status} if has_shipment else None,
        conversion_type=conversion,
    )


class ConversionTypeTests(unittest.TestCase):
    def test_markers(self) -> None:
        self.assertEqual(conversion_type('phase2-migration-script'), 'migration')
        self.assertEqual(conversion_type('backfill_script'), 'migration')
        self.assertEqual(conversion_type('dual-write'), 'auto')
        self.assertEqual(conversion_type('shipment-cascade'), 'auto')
        self.assertEqual(conversion_type('admin:17'), 'manual')
        self.assertEqual(conversion_type('vendor-portal'), 'unknown')
        self.assertEqual(conversion_type(None), 'unknown')
        self.assertEqual(conversion_type(''), 'unknown')


class ClassificationRuleTests(unittest.TestCase):
    def _assert(self, candidate: AuditCandidate, root_cause: str, severity: str) -> None:
        result = classify(candidate)
        self.assertEqual((result.root_cause, result.severity), (root_cause, severity))

    def test_shipped_without_shipment_record(self) -> None:
        self._assert(_candidate(dispatch_status='SHIPPED'), 'MISSING_SHIPMENT_RECORD', 'major')

    def test_delivered_claim_without_shipment(self) -> None:
        self._assert(_candidate(delivery_status='DELIVERED', dispatch_status='SHIPPED'), 'MANUAL_STATUS_OVERRIDE', 'minor')
        self._assert(_candidate(pr_status='FULLY_DELIVERED'), 'MANUAL_STATUS_OVERRIDE', 'minor')

    def test_migration_artifact_takes_precedence(self) -> None:
        self._assert(
            _candidate(dispatch_status='SHIPPED', pr_status='FULLY_DELIVERED', conversion='migration'),
            'DATA_MIGRATION_ARTIFACT',
            'minor',
        )

    def test_migration_conversion_with_shipment_is_not_an_artifact(self) -> None:
        self._assert(
            _candidate(has_shipment=True, shipment_status='IN_TRANSIT', conversion='migration'),
            'SHIPMENT_NOT_DELIVERED',
            'major',
        )

    def test_orphaned_pr(self) -> None:
        self._assert(_candidate(dispatch_status='PENDING'), 'ORPHANED_PR', 'minor')

    def test_status_mismatch(self) -> None:
        self._assert(
            _candidate(has_shipment=True, shipment_status='Delivered', unified_pr_status='IN_SHIPMENT'),
            'STATUS_MISMATCH',
            'critical',
        )

    def test_unknown(self) -> None:
        self._assert(
            _candidate(has_shipment=True, shipment_status='DELIVERED', unified_pr_status='FULLY_DELIVERED'),
            'UNKNOWN',
            'minor',
        )

    def test_rules_are_independent_predicates(self) -> None:
        candidate = _candidate(pr_status='FULLY_DELIVERED', dispatch_status='SHIPPED')
        matched = [rule.root_cause for rule in RULES if rule.predicate(candidate)]
        self.assertEqual(matched, ['MANUAL_STATUS_OVERRIDE', 'MISSING_SHIPMENT_RECORD', 'ORPHANED_PR'])


class CandidateQueryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()

    def tearDown(self) -> None:
        self.db.close()

    def test_shipped_order_without_shipment_is_missing_record(self) -> None:
        self.db.add(Order(id='ORD-1', pr_number='PR-1', dispatch_status='SHIPPED'))
        self.db.commit()

        report = run_audit(self.db)
        self.assertEqual(len(report.findings), 1)
        finding = report.findings[0]
        self.assertEqual(finding.classification.root_cause, 'MISSING_SHIPMENT_RECORD')
        self.assertEqual(finding.classification.severity, 'major')
        self.assertFalse(finding.candidate.has_shipment)

    def test_union_is_deduplicated_and_consistent_rows_are_skipped(self) -> None:
        self.db.add_all(
            [
                # Matches both queries.
                Order(id='ORD-1', pr_number='PR-1', dispatch_status='SHIPPED'),
                # Only the missing-shipment query.
                Order(id='ORD-2', pr_number='PR-2', unified_pr_status='IN_SHIPMENT'),
                # Only the delivery-claim query; shipment exists.
                Order(id='ORD-3', pr_number='PR-3', pr_status='FULLY_DELIVERED', unified_pr_status='IN_SHIPMENT'),
                Shipment(shipment_id='SHP-3', pr_number='PR-3', shipment_status='DELIVERED'),
                # Consistent.
                Order(
                    id='ORD-4',
                    pr_number='PR-4',
                    pr_status='FULLY_DELIVERED',
                    dispatch_status='SHIPPED',
                    unified_pr_status='FULLY_DELIVERED',
                ),
                Shipment(shipment_id='SHP-4', pr_number='PR-4', shipment_status='DELIVERED'),
                # No PR number.
                Order(id='ORD-5', dispatch_status='SHIPPED'),
            ]
        )
        self.db.commit()

        self.assertEqual([o.id for o in find_candidate_orders(self.db)], ['ORD-1', 'ORD-3', 'ORD-2'])
        by_id = {f.candidate.id: f for f in run_audit(self.db).findings}
        self.assertEqual(by_id['ORD-2'].classification.root_cause, 'ORPHANED_PR')
        self.assertEqual(by_id['ORD-3'].classification.root_cause, 'STATUS_MISMATCH')
        self.assertEqual(by_id['ORD-3'].candidate.shipment['shipment_id'], 'SHP-3')


class ReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.db.add_all(
            [
                Order(id='ORD-1', pr_number='PR-1', dispatch_status='SHIPPED'),
                Order(
                    id='ORD-2',
                    pr_number='PR-2',
                    delivery_status='DELIVERED',
                    unified_pr_status_updated_by='admin:9',
                ),
                Order(id='ORD-3', pr_number='PR-3', pr_status='FULLY_DELIVERED', unified_pr_status='IN_SHIPMENT'),
                Shipment(shipment_id='SHP-3', pr_number='PR-3', shipment_status='DELIVERED'),
            ]
        )
        self.db.commit()
        self.now = datetime(2026, 1, 16, 12, 0, tzinfo=timezone.utc)

    def tearDown(self) -> None:
        self.db.close()

    def test_summary_counts(self) -> None:
        payload = run_audit(self.db, now=self.now).as_dict()
        self.assertEqual(payload['generated_at'], '2026-01-16T12:00:00+00:00')
        self.assertTrue(payload['dry_run'])
        self.assertEqual(payload['total_records'], 3)
        self.assertEqual(payload['by_severity'], {'critical': 1, 'major': 1, 'minor': 1})
        self.assertEqual(
            payload['by_root_cause'],
            {'MANUAL_STATUS_OVERRIDE': 1, 'MISSING_SHIPMENT_RECORD': 1, 'STATUS_MISMATCH': 1},
        )
        self.assertEqual(payload['by_conversion_type'], {'manual': 1, 'unknown': 2})
        self.assertEqual(payload['shipment_status'], {'with': 1, 'without': 2})
        self.assertEqual(set(payload['recommended_actions']), {'critical', 'major', 'minor'})

        detail = next(d for d in payload['details'] if d['id'] == 'ORD-3')
        self.assertEqual(detail['root_cause_label'], 'Legacy/Unified Status Mismatch')
        self.assertEqual(detail['recommendation'], 'Run status consistency repair to align unified_pr_status')
        self.assertTrue(detail['has_shipment'])
        self.assertEqual(detail['legacy']['pr_status'], 'FULLY_DELIVERED')

    def test_report_is_json_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = write_report(run_audit(self.db, now=self.now), Path(tmp) / 'nested' / 'audit.json')
            payload = json.loads(path.read_text(encoding='utf-8'))
        self.assertEqual(payload['total_records'], 3)
        self.assertEqual(len(payload['details']), 3)


class ReadOnlyTests(unittest.TestCase):
    def test_session_refuses_to_flush(self) -> None:
        factory = read_only_sessionmaker(make_engine())
        with factory() as db:
            self.assertEqual(find_candidate_orders(db), [])
            db.add(Order(id='ORD-1', pr_number='PR-1'))
            with self.assertRaises(ReadOnlySessionError):
                db.flush()


class CommandTests(unittest.TestCase):
    def test_refuses_without_dry_run(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            output = Path(tmp) / 'report.json'
            for raw in (None, 'false', 'TRUE', '1'):
                with self.subTest(raw=raw):
                    self.assertEqual(run(output=str(output), database_url='sqlite://', dry_run=raw), 1)
            self.assertFalse(output.exists())

    def test_writes_report_even_when_clean(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            database_url = f"sqlite:///{Path(tmp) / 'audit.db'}"
            make_engine(database_url).dispose()
            output = Path(tmp) / 'reports' / 'cascade-integrity-audit.json'
            code = run(output=str(output), database_url=database_url, dry_run='true')
            payload = json.loads(output.read_text(encoding='utf-8'))
        self.assertEqual(code, 0)
        self.assertEqual(payload['total_records'], 0)
        self.assertEqual(payload['details'], [])

    def test_database_errors_exit_non_zero(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            output = Path(tmp) / 'report.json'
            # Empty database: the schema is missing.
            code = run(output=str(output), database_url=f"sqlite:///{Path(tmp) / 'empty.db'}", dry_run='true')
            self.assertEqual(code, 1)
            self.assertFalse(output.exists())


if __name__ == '__main__':
    unittest.main()
