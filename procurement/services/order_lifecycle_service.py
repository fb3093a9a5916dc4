from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import EntityType, Order, OrderItem, OrderType, Shipment
from procurement.services.dual_write_service import StatusContext, transition
from procurement.services.eligibility_service import (
    DecrementResult,
    OrderLineInput,
    decrement_on_order_placement,
)
from procurement.services.migration_flags import MigrationFlagState
from procurement.services.status_model import (
    DELIVERY_DELIVERED,
    DISPATCH_SHIPPED,
    UnifiedOrderStatus,
    UnifiedPRStatus,
    UnifiedShipmentStatus,
    is_shipment_delivered,
)

logger = logging.getLogger(__name__)

CASCADE_SOURCE = 'shipment-cascade'

# Only a delivered shipment may move a PR into these.
DELIVERY_PR_STATUSES = frozenset({UnifiedPRStatus.PARTIALLY_DELIVERED, UnifiedPRStatus.FULLY_DELIVERED})


@dataclass
class PlacedOrder:
    order: Order
    eligibility: DecrementResult
    warnings: list[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise LookupError(f'Order not found: {order_id}')
    return order


def place_order(
    db: Session,
    *,
    employee_id: str,
    items: Sequence[OrderLineInput],
    flags: MigrationFlagState,
    order_id: str | None = None,
    pr_number: str | None = None,
    company_id: str | None = None,
    vendor_id: str | None = None,
    order_type: OrderType = OrderType.NORMAL,
    original_order_id: str | None = None,
    placed_by: str | None = None,
) -> PlacedOrder:
    if not items:
        raise ValueError('Order must contain at least one item')
    if order_type == OrderType.REPLACEMENT and not original_order_id:
        raise ValueError('Replacement orders must reference the original order')

    order_id = order_id or f'ORD-{uuid4().hex[:12].upper()}'
    existing = db.get(Order, order_id)
    if existing is not None:
        if existing.employee_id != employee_id:
            raise ValueError(f'Order {order_id} belongs to another employee')
        # Retried placement: the ledger replays recorded decrements instead of applying them again.
        stored = db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.line_no.asc())
        ).scalars().all()
        eligibility = decrement_on_order_placement(
            db,
            employee_id=existing.employee_id,
            items=[OrderLineInput(item.product_id, item.quantity) for item in stored],
            order_id=order_id,
            is_replacement_order=existing.order_type == OrderType.REPLACEMENT,
        )
        return PlacedOrder(order=existing, eligibility=eligibility, warnings=list(eligibility.errors))

    order = Order(
        id=order_id,
        pr_number=pr_number,
        order_type=order_type,
        employee_id=employee_id,
        company_id=company_id,
        vendor_id=vendor_id,
        original_order_id=original_order_id,
    )
    db.add(order)
    for line_no, item in enumerate(items, start=1):
        db.add(OrderItem(order_id=order_id, line_no=line_no, product_id=item.product_ref, quantity=item.quantity))

    context = StatusContext(updated_by=placed_by, source='order-placement')
    # Replacement orders skip approval.
    initial = (
        UnifiedOrderStatus.IN_FULFILMENT if order_type == OrderType.REPLACEMENT else UnifiedOrderStatus.PENDING_APPROVAL
    )
    transition(db, order, EntityType.ORDER, order_id, initial, flags, context=context)
    if pr_number:
        transition(db, order, EntityType.PR, order_id, UnifiedPRStatus.DRAFT, flags, context=context)
    db.flush()

    eligibility = decrement_on_order_placement(
        db,
        employee_id=employee_id,
        items=items,
        order_id=order_id,
        is_replacement_order=order_type == OrderType.REPLACEMENT,
    )
    if not eligibility.success:
        # Unknown employee: nothing about this order should persist.
        raise LookupError('; '.join(eligibility.errors) or f'Employee not found: {employee_id}')

    logger.info(
        'Placed %s order %s for employee %s with %s line(s)', order_type.value, order_id, employee_id, len(items)
    )
    return PlacedOrder(order=order, eligibility=eligibility, warnings=list(eligibility.errors))


def advance_order_status(
    db: Session,
    *,
    order_id: str,
    new_status: UnifiedOrderStatus | str,
    flags: MigrationFlagState,
    updated_by: str | None = None,
    reason: str | None = None,
) -> Order:
    order = get_order(db, order_id)
    transition(
        db,
        order,
        EntityType.ORDER,
        order_id,
        new_status,
        flags,
        context=StatusContext(updated_by=updated_by, reason=reason, source='order-workflow'),
    )
    order.updated_at = _now()
    db.flush()
    return order


def advance_pr_status(
    db: Session,
    *,
    order_id: str,
    new_status: UnifiedPRStatus | str,
    flags: MigrationFlagState,
    updated_by: str | None = None,
    reason: str | None = None,
) -> Order:
    order = get_order(db, order_id)
    if not order.pr_number:
        raise ValueError(f'Order {order_id} has no PR number')
    if new_status in DELIVERY_PR_STATUSES:
        shipment = get_shipment_for_pr(db, order.pr_number)
        if shipment is None or not is_shipment_delivered(
            shipment.shipment_status or shipment.unified_shipment_status
        ):
            raise ValueError(f'PR {order.pr_number} has no delivered shipment')
    transition(
        db,
        order,
        EntityType.PR,
        order_id,
        new_status,
        flags,
        context=StatusContext(updated_by=updated_by, reason=reason, source='pr-workflow'),
    )
    order.updated_at = _now()
    db.flush()
    return order


def get_shipment_for_pr(db: Session, pr_number: str) -> Shipment | None:
    return db.execute(
        select(Shipment).where(Shipment.pr_number == pr_number).order_by(Shipment.created_at.asc()).limit(1)
    ).scalar_one_or_none()


def dispatch_order(
    db: Session,
    *,
    order_id: str,
    flags: MigrationFlagState,
    shipment_id: str | None = None,
    courier_status: str | None = None,
    updated_by: str | None = None,
) -> Shipment:
    order = get_order(db, order_id)
    if not order.pr_number:
        raise ValueError(f'Order {order_id} has no PR number to ship against')
    existing = get_shipment_for_pr(db, order.pr_number)
    if existing is not None:
        raise ValueError(f'PR {order.pr_number} already has shipment {existing.shipment_id}')

    shipment_id = shipment_id or f'SHP-{uuid4().hex[:12].upper()}'
    shipment = Shipment(shipment_id=shipment_id, pr_number=order.pr_number, courier_status=courier_status)
    db.add(shipment)

    context = StatusContext(updated_by=updated_by or CASCADE_SOURCE, source=CASCADE_SOURCE)
    transition(db, shipment, EntityType.SHIPMENT, shipment_id, UnifiedShipmentStatus.IN_TRANSIT, flags, context=context)
    transition(
        db,
        order,
        EntityType.ORDER,
        order_id,
        UnifiedOrderStatus.DISPATCHED,
        flags,
        context=context,
        legacy_extra={'dispatch_status': DISPATCH_SHIPPED},
    )
    # PR cascade is best effort; an out-of-order PR is logged, not blocked.
    transition(db, order, EntityType.PR, order_id, UnifiedPRStatus.IN_SHIPMENT, flags, context=context, strict=False)
    order.updated_at = _now()
    db.flush()
    logger.info('Dispatched order %s as shipment %s (pr=%s)', order_id, shipment_id, order.pr_number)
    return shipment


def mark_shipment_delivered(
    db: Session,
    *,
    shipment_id: str,
    flags: MigrationFlagState,
    updated_by: str | None = None,
    delivered_at: datetime | None = None,
) -> Shipment:
    shipment = db.get(Shipment, shipment_id)
    if shipment is None:
        raise LookupError(f'Shipment not found: {shipment_id}')

    context = StatusContext(updated_by=updated_by or CASCADE_SOURCE, source=CASCADE_SOURCE)
    transition(
        db, shipment, EntityType.SHIPMENT, shipment_id, UnifiedShipmentStatus.DELIVERED, flags, context=context
    )
    if delivered_at is not None:
        shipment.delivered_at = delivered_at
    shipment.updated_at = _now()

    orders = db.execute(select(Order).where(Order.pr_number == shipment.pr_number)).scalars().all()
    for order in orders:
        transition(
            db,
            order,
            EntityType.ORDER,
            order.id,
            UnifiedOrderStatus.DELIVERED,
            flags,
            context=context,
            legacy_extra={'delivery_status': DELIVERY_DELIVERED},
            strict=False,
        )
        transition(
            db, order, EntityType.PR, order.id, UnifiedPRStatus.FULLY_DELIVERED, flags, context=context, strict=False
        )
        order.updated_at = _now()
    db.flush()
    logger.info('Shipment %s delivered; cascaded to %s order(s)', shipment_id, len(orders))
    return shipment
