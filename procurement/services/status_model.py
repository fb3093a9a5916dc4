from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from procurement.models import EntityType, GRNResolvedStatus


class LegacyOrderStatus(str, Enum):
    AWAITING_APPROVAL = 'Awaiting approval'
    AWAITING_FULFILMENT = 'Awaiting fulfilment'
    DISPATCHED = 'Dispatched'
    DELIVERED = 'Delivered'


class UnifiedOrderStatus(str, Enum):
    CREATED = 'CREATED'
    PENDING_APPROVAL = 'PENDING_APPROVAL'
    APPROVED = 'APPROVED'
    IN_FULFILMENT = 'IN_FULFILMENT'
    DISPATCHED = 'DISPATCHED'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'


class UnifiedPRStatus(str, Enum):
    DRAFT = 'DRAFT'
    PENDING_SITE_ADMIN_APPROVAL = 'PENDING_SITE_ADMIN_APPROVAL'
    SITE_ADMIN_APPROVED = 'SITE_ADMIN_APPROVED'
    PENDING_COMPANY_ADMIN_APPROVAL = 'PENDING_COMPANY_ADMIN_APPROVAL'
    COMPANY_ADMIN_APPROVED = 'COMPANY_ADMIN_APPROVED'
    REJECTED = 'REJECTED'
    LINKED_TO_PO = 'LINKED_TO_PO'
    IN_SHIPMENT = 'IN_SHIPMENT'
    PARTIALLY_DELIVERED = 'PARTIALLY_DELIVERED'
    FULLY_DELIVERED = 'FULLY_DELIVERED'
    CLOSED = 'CLOSED'


class UnifiedShipmentStatus(str, Enum):
    CREATED = 'CREATED'
    MANIFESTED = 'MANIFESTED'
    PICKED_UP = 'PICKED_UP'
    IN_TRANSIT = 'IN_TRANSIT'
    OUT_FOR_DELIVERY = 'OUT_FOR_DELIVERY'
    DELIVERED = 'DELIVERED'
    FAILED = 'FAILED'
    RETURNED = 'RETURNED'
    LOST = 'LOST'


class UnifiedGRNStatus(str, Enum):
    DRAFT = 'DRAFT'
    RAISED = 'RAISED'
    PENDING_APPROVAL = 'PENDING_APPROVAL'
    APPROVED = 'APPROVED'
    INVOICED = 'INVOICED'
    CLOSED = 'CLOSED'


class InvoiceStatus(str, Enum):
    RAISED = 'RAISED'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


DISPATCH_SHIPPED = 'SHIPPED'
DELIVERY_DELIVERED = 'DELIVERED'
LEGACY_PR_FULLY_DELIVERED = 'FULLY_DELIVERED'


TRANSITIONS: dict[EntityType, dict[str, tuple[str, ...]]] = {
    EntityType.ORDER: {
        'CREATED': ('PENDING_APPROVAL', 'CANCELLED'),
        'PENDING_APPROVAL': ('APPROVED', 'CANCELLED'),
        'APPROVED': ('IN_FULFILMENT', 'CANCELLED'),
        'IN_FULFILMENT': ('DISPATCHED', 'CANCELLED'),
        'DISPATCHED': ('DELIVERED',),
        'DELIVERED': (),
        'CANCELLED': (),
    },
    EntityType.PR: {
        'DRAFT': ('PENDING_SITE_ADMIN_APPROVAL',),
        'PENDING_SITE_ADMIN_APPROVAL': ('SITE_ADMIN_APPROVED', 'REJECTED'),
        'SITE_ADMIN_APPROVED': ('PENDING_COMPANY_ADMIN_APPROVAL',),
        'PENDING_COMPANY_ADMIN_APPROVAL': ('COMPANY_ADMIN_APPROVED', 'REJECTED'),
        'COMPANY_ADMIN_APPROVED': ('LINKED_TO_PO',),
        'REJECTED': (),
        'LINKED_TO_PO': ('IN_SHIPMENT',),
        'IN_SHIPMENT': ('PARTIALLY_DELIVERED', 'FULLY_DELIVERED'),
        'PARTIALLY_DELIVERED': ('FULLY_DELIVERED',),
        'FULLY_DELIVERED': ('CLOSED',),
        'CLOSED': (),
    },
    EntityType.SHIPMENT: {
        'CREATED': ('MANIFESTED', 'PICKED_UP', 'FAILED'),
        'MANIFESTED': ('PICKED_UP', 'FAILED'),
        'PICKED_UP': ('IN_TRANSIT', 'FAILED'),
        'IN_TRANSIT': ('OUT_FOR_DELIVERY', 'DELIVERED', 'FAILED', 'RETURNED', 'LOST'),
        'OUT_FOR_DELIVERY': ('DELIVERED', 'FAILED', 'RETURNED'),
        'DELIVERED': (),
        'FAILED': ('RETURNED',),
        'RETURNED': (),
        'LOST': (),
    },
    EntityType.GRN: {
        'DRAFT': ('RAISED',),
        'RAISED': ('PENDING_APPROVAL', 'APPROVED'),
        'PENDING_APPROVAL': ('APPROVED',),
        'APPROVED': ('INVOICED', 'CLOSED'),
        'INVOICED': ('CLOSED',),
        'CLOSED': (),
    },
    EntityType.INVOICE: {
        'RAISED': ('APPROVED', 'REJECTED'),
        'APPROVED': (),
        # A rejected invoice stays on record; a corrected one is raised as a new row.
        'REJECTED': (),
    },
}

LEGACY_TO_UNIFIED: dict[EntityType, dict[str, str]] = {
    EntityType.ORDER: {
        'Awaiting approval': 'PENDING_APPROVAL',
        'Awaiting fulfilment': 'IN_FULFILMENT',
        'Dispatched': 'DISPATCHED',
        'Delivered': 'DELIVERED',
    },
    EntityType.PR: {
        'DRAFT': 'DRAFT',
        'SUBMITTED': 'PENDING_SITE_ADMIN_APPROVAL',
        'PENDING_SITE_ADMIN_APPROVAL': 'PENDING_SITE_ADMIN_APPROVAL',
        'SITE_ADMIN_APPROVED': 'SITE_ADMIN_APPROVED',
        'PENDING_COMPANY_ADMIN_APPROVAL': 'PENDING_COMPANY_ADMIN_APPROVAL',
        'COMPANY_ADMIN_APPROVED': 'COMPANY_ADMIN_APPROVED',
        'REJECTED_BY_SITE_ADMIN': 'REJECTED',
        'REJECTED_BY_COMPANY_ADMIN': 'REJECTED',
        'PO_CREATED': 'LINKED_TO_PO',
        'FULLY_DELIVERED': 'FULLY_DELIVERED',
    },
    EntityType.SHIPMENT: {
        'CREATED': 'CREATED',
        'IN_TRANSIT': 'IN_TRANSIT',
        'DELIVERED': 'DELIVERED',
        'Delivered': 'DELIVERED',
        'FAILED': 'FAILED',
    },
    EntityType.GRN: {
        'CREATED': 'RAISED',
        'RAISED': 'RAISED',
        'ACKNOWLEDGED': 'APPROVED',
        'APPROVED': 'APPROVED',
        'RECEIVED': 'APPROVED',
        'INVOICED': 'INVOICED',
        'CLOSED': 'CLOSED',
    },
    EntityType.INVOICE: {
        'RAISED': 'RAISED',
        'APPROVED': 'APPROVED',
        'REJECTED': 'REJECTED',
    },
}

UNIFIED_TO_LEGACY: dict[EntityType, dict[str, str]] = {
    EntityType.ORDER: {
        'CREATED': 'Awaiting approval',
        'PENDING_APPROVAL': 'Awaiting approval',
        'APPROVED': 'Awaiting fulfilment',
        'IN_FULFILMENT': 'Awaiting fulfilment',
        'DISPATCHED': 'Dispatched',
        'DELIVERED': 'Delivered',
        # Legacy orders have no cancelled state.
        'CANCELLED': 'Awaiting approval',
    },
    EntityType.PR: {
        'DRAFT': 'DRAFT',
        'PENDING_SITE_ADMIN_APPROVAL': 'PENDING_SITE_ADMIN_APPROVAL',
        'SITE_ADMIN_APPROVED': 'SITE_ADMIN_APPROVED',
        'PENDING_COMPANY_ADMIN_APPROVAL': 'PENDING_COMPANY_ADMIN_APPROVAL',
        'COMPANY_ADMIN_APPROVED': 'COMPANY_ADMIN_APPROVED',
        'REJECTED': 'REJECTED_BY_COMPANY_ADMIN',
        'LINKED_TO_PO': 'PO_CREATED',
        'IN_SHIPMENT': 'PO_CREATED',
        'PARTIALLY_DELIVERED': 'PO_CREATED',
        'FULLY_DELIVERED': 'FULLY_DELIVERED',
        'CLOSED': 'FULLY_DELIVERED',
    },
    EntityType.SHIPMENT: {
        'CREATED': 'CREATED',
        'MANIFESTED': 'CREATED',
        'PICKED_UP': 'IN_TRANSIT',
        'IN_TRANSIT': 'IN_TRANSIT',
        'OUT_FOR_DELIVERY': 'IN_TRANSIT',
        'DELIVERED': 'DELIVERED',
        'FAILED': 'FAILED',
        'RETURNED': 'FAILED',
        'LOST': 'FAILED',
    },
    # GRN legacy state is two fields; see GRN_UNIFIED_TO_LEGACY.
    EntityType.GRN: {},
    EntityType.INVOICE: {
        'RAISED': 'RAISED',
        'APPROVED': 'APPROVED',
        'REJECTED': 'REJECTED',
    },
}

# unified GRN status -> (grn_status, status)
GRN_UNIFIED_TO_LEGACY: dict[str, tuple[str, str]] = {
    'DRAFT': ('RAISED', 'CREATED'),
    'RAISED': ('RAISED', 'CREATED'),
    'PENDING_APPROVAL': ('RAISED', 'CREATED'),
    'APPROVED': ('APPROVED', 'ACKNOWLEDGED'),
    'INVOICED': ('APPROVED', 'INVOICED'),
    'CLOSED': ('APPROVED', 'CLOSED'),
}


@dataclass(frozen=True)
class TransitionValidation:
    valid: bool
    reason: str | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict:
        return {'valid': self.valid, 'reason': self.reason, 'warnings': list(self.warnings)}


def _value(status: Any) -> str | None:
    if status is None:
        return None
    if isinstance(status, Enum):
        return str(status.value)
    return str(status)


def validate_status_transition(entity: EntityType, current: Any, new: Any) -> TransitionValidation:
    """
    Check a unified status move against the forward-only transition table.

    Never raises. New records (no current status) are always valid; unknown current statuses
    are let through with a warning so that rows written before the table existed stay writable.
    """
    current_value = _value(current)
    new_value = _value(new)
    if not current_value:
        return TransitionValidation(valid=True)
    if current_value == new_value:
        return TransitionValidation(valid=True, warnings=(f'Status unchanged: {current_value} -> {new_value}',))

    rules = TRANSITIONS.get(entity)
    if rules is None:
        return TransitionValidation(valid=True, warnings=(f'Unknown entity type: {entity}',))
    allowed = rules.get(current_value)
    if allowed is None:
        return TransitionValidation(
            valid=True, warnings=(f'Unknown current status: {current_value} for entity {entity.value}',)
        )
    if new_value in allowed:
        return TransitionValidation(valid=True)

    order = list(rules)
    if new_value not in rules:
        reason = f'Unknown target status: {new_value} for {entity.value}'
    elif order.index(new_value) < order.index(current_value):
        reason = f'Backwards transition not allowed: {current_value} -> {new_value} for {entity.value}'
    else:
        reason = (
            f'Status skipping not allowed: {current_value} -> {new_value} for {entity.value}. '
            f"Allowed: [{', '.join(allowed)}]"
        )
    return TransitionValidation(valid=False, reason=reason)


def legacy_to_unified(entity: EntityType, legacy_status: str | None) -> str | None:
    if not legacy_status:
        return None
    return LEGACY_TO_UNIFIED.get(entity, {}).get(legacy_status)


def unified_to_legacy(entity: EntityType, unified_status: str | None) -> str | None:
    if not unified_status:
        return None
    return UNIFIED_TO_LEGACY.get(entity, {}).get(unified_status)


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def is_shipment_delivered(status: str | None) -> bool:
    return bool(status) and status.strip().upper() == 'DELIVERED'


def is_grn_approved(grn: Any) -> bool:
    """
    True when any of the four historical approval markers is set.

    Every "can this GRN be invoiced" decision must go through this predicate so that
    screens and services agree on rows written before ``resolved_status`` existed.
    """
    if grn is None:
        return False
    return (
        _field(grn, 'grn_status') == 'APPROVED'
        or _field(grn, 'status') == 'APPROVED'
        or _field(grn, 'grn_acknowledged_by_company') is True
        or _field(grn, 'status') == 'ACKNOWLEDGED'
    )


def resolve_grn_status(grn: Any) -> GRNResolvedStatus:
    markers = (_field(grn, 'unified_grn_status'), _field(grn, 'status'))
    if 'CLOSED' in markers:
        return GRNResolvedStatus.CLOSED
    if 'INVOICED' in markers:
        return GRNResolvedStatus.INVOICED
    if is_grn_approved(grn) or markers[0] == 'APPROVED':
        return GRNResolvedStatus.APPROVED
    return GRNResolvedStatus.RAISED


def effective_invoice_status(invoice: Any) -> str | None:
    unified = _field(invoice, 'unified_invoice_status')
    if unified is not None:
        return unified
    return _field(invoice, 'invoice_status')


def _normalize_id(value: Any) -> str:
    return str(value).strip() if value is not None else ''


def has_non_rejected_invoice(grn_id: Any, invoices: Iterable[Any]) -> bool:
    target = _normalize_id(grn_id)
    if not target:
        return False
    for invoice in invoices:
        if _normalize_id(_field(invoice, 'grn_id')) != target:
            continue
        if effective_invoice_status(invoice) != InvoiceStatus.REJECTED.value:
            return True
    return False


def can_raise_invoice(grn: Any, invoices: Iterable[Any]) -> bool:
    return is_grn_approved(grn) and not has_non_rejected_invoice(_field(grn, 'id'), invoices)
