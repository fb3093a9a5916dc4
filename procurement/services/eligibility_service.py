from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import EligibilityEvent, EligibilityEventKind, Employee
from procurement.services.category_resolver import resolve_product_category

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLineInput:
    product_ref: str
    quantity: int


@dataclass(frozen=True)
class EligibilityChange:
    category: str
    previous_value: int
    new_value: int
    quantity: int

    @property
    def delta(self) -> int:
        return self.new_value - self.previous_value


@dataclass
class DecrementResult:
    success: bool = False
    decrements: list[EligibilityChange] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    replayed: bool = False


@dataclass
class IncrementResult:
    success: bool = False
    increment: EligibilityChange | None = None
    error: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _load_employee_for_update(db: Session, employee_id: str) -> Employee | None:
    # Row lock serialises concurrent ledger writes for the same employee.
    employee = db.execute(select(Employee).where(Employee.id == employee_id).with_for_update()).scalar_one_or_none()
    if employee is None:
        employee = db.execute(
            select(Employee).where(Employee.employee_code == employee_id).with_for_update()
        ).scalar_one_or_none()
    return employee


def _current_value(balances: dict, category: str) -> int:
    try:
        return max(int(balances.get(category) or 0), 0)
    except (TypeError, ValueError):
        return 0


def _recorded_decrements(db: Session, *, employee_id: str, order_id: str) -> list[EligibilityEvent]:
    return db.execute(
        select(EligibilityEvent)
        .where(
            EligibilityEvent.employee_id == employee_id,
            EligibilityEvent.kind == EligibilityEventKind.DECREMENT,
            EligibilityEvent.source_ref == order_id,
        )
        .order_by(EligibilityEvent.id.asc())
    ).scalars().all()


def _event(employee_id: str, kind: EligibilityEventKind, change: EligibilityChange, source_ref: str) -> EligibilityEvent:
    return EligibilityEvent(
        employee_id=employee_id,
        category=change.category,
        kind=kind,
        quantity=change.quantity,
        previous_value=change.previous_value,
        new_value=change.new_value,
        delta=change.delta,
        source_ref=source_ref,
    )


def decrement_on_order_placement(
    db: Session,
    *,
    employee_id: str,
    items: Iterable[OrderLineInput],
    order_id: str,
    is_replacement_order: bool = False,
) -> DecrementResult:
    """
    Consume quota when an order is placed.

    Replacement orders are skipped because the order they replace already consumed the quota.
    Lines whose product or category cannot be resolved are reported in ``errors`` and skipped;
    the remaining lines are applied together in one flush with one ledger event each.
    """
    result = DecrementResult()
    if is_replacement_order:
        logger.info('Skipping eligibility decrement for replacement order %s', order_id)
        result.success = True
        return result

    employee = _load_employee_for_update(db, employee_id)
    if employee is None:
        logger.warning('Eligibility decrement aborted for order %s: employee %s not found', order_id, employee_id)
        result.errors.append(f'Employee not found: {employee_id}')
        return result

    recorded = _recorded_decrements(db, employee_id=employee.id, order_id=order_id)
    if recorded:
        logger.warning('Order %s already decremented eligibility for employee %s; replaying', order_id, employee.id)
        result.success = True
        result.replayed = True
        result.decrements = [
            EligibilityChange(
                category=row.category,
                previous_value=row.previous_value,
                new_value=row.new_value,
                quantity=row.quantity,
            )
            for row in recorded
        ]
        return result

    staged = dict(employee.eligibility or {})
    for item in items:
        if item.quantity <= 0:
            result.errors.append(f'Invalid quantity {item.quantity} for product: {item.product_ref}')
            continue
        try:
            category = resolve_product_category(db, company_id=employee.company_id, product_ref=item.product_ref)
        except LookupError as exc:
            logger.warning('Eligibility decrement skipped line for order %s: %s', order_id, exc)
            result.errors.append(str(exc))
            continue

        current = _current_value(staged, category.name)
        new_value = max(0, current - item.quantity)
        staged[category.name] = new_value
        result.decrements.append(
            EligibilityChange(category=category.name, previous_value=current, new_value=new_value, quantity=item.quantity)
        )

    if result.decrements:
        # Reassign so the JSON column is flagged dirty; everything lands in a single flush.
        employee.eligibility = staged
        employee.updated_at = _now()
        for change in result.decrements:
            db.add(_event(employee.id, EligibilityEventKind.DECREMENT, change, order_id))
        db.flush()
        for change in result.decrements:
            logger.info(
                'Eligibility decrement employee=%s category=%s qty=%s %s -> %s order=%s',
                employee.id,
                change.category,
                change.quantity,
                change.previous_value,
                change.new_value,
                order_id,
            )

    result.success = True
    return result


def increment_on_return_approval(
    db: Session,
    *,
    employee_id: str,
    product_ref: str,
    quantity: int,
    return_request_id: str,
) -> IncrementResult:
    result = IncrementResult()
    if quantity <= 0:
        result.error = f'Invalid quantity {quantity} for product: {product_ref}'
        return result

    employee = _load_employee_for_update(db, employee_id)
    if employee is None:
        result.error = f'Employee not found: {employee_id}'
        logger.warning('Eligibility increment for return %s failed: %s', return_request_id, result.error)
        return result

    try:
        category = resolve_product_category(db, company_id=employee.company_id, product_ref=product_ref)
    except LookupError as exc:
        result.error = str(exc)
        logger.warning('Eligibility increment for return %s failed: %s', return_request_id, result.error)
        return result

    balances = dict(employee.eligibility or {})
    current = _current_value(balances, category.name)
    change = EligibilityChange(
        category=category.name,
        previous_value=current,
        new_value=current + quantity,
        quantity=quantity,
    )
    balances[category.name] = change.new_value
    employee.eligibility = balances
    employee.updated_at = _now()
    db.add(_event(employee.id, EligibilityEventKind.INCREMENT, change, return_request_id))
    db.flush()

    logger.info(
        'Eligibility increment employee=%s category=%s qty=%s %s -> %s return=%s',
        employee.id,
        change.category,
        quantity,
        change.previous_value,
        change.new_value,
        return_request_id,
    )
    result.success = True
    result.increment = change
    return result


def get_remaining(db: Session, *, employee_id: str) -> dict[str, int] | None:
    employee = db.execute(select(Employee).where(Employee.id == employee_id)).scalar_one_or_none()
    if employee is None:
        employee = db.execute(select(Employee).where(Employee.employee_code == employee_id)).scalar_one_or_none()
    if employee is None:
        return None
    balances = employee.eligibility or {}
    return {category: _current_value(balances, category) for category in sorted(balances)}


def list_ledger_events(db: Session, *, employee_id: str) -> list[EligibilityEvent]:
    return db.execute(
        select(EligibilityEvent).where(EligibilityEvent.employee_id == employee_id).order_by(EligibilityEvent.id.asc())
    ).scalars().all()


def replay_remaining(starting: dict[str, int], events: Iterable[EligibilityEvent]) -> dict[str, int]:
    """Fold ledger events over a starting balance, clamping at zero after every step."""
    balances = {category: max(int(value), 0) for category, value in starting.items()}
    for event in events:
        current = balances.get(event.category, 0)
        if event.kind == EligibilityEventKind.DECREMENT:
            balances[event.category] = max(0, current - event.quantity)
        else:
            balances[event.category] = current + event.quantity
    return balances
