from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from procurement.models import EntityType, GRN
from procurement.services.audit_service import log_status_change
from procurement.services.migration_flags import MigrationFlagState
from procurement.services.status_model import (
    GRN_UNIFIED_TO_LEGACY,
    TransitionValidation,
    legacy_to_unified,
    resolve_grn_status,
    unified_to_legacy,
    validate_status_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = 'dual-write'

# entity -> (legacy status column, unified status column prefix, legacy fallback)
_STATUS_FIELDS: dict[EntityType, tuple[str, str, str]] = {
    EntityType.ORDER: ('status', 'unified_status', 'Awaiting approval'),
    EntityType.PR: ('pr_status', 'unified_pr_status', 'DRAFT'),
    EntityType.SHIPMENT: ('shipment_status', 'unified_shipment_status', 'CREATED'),
    EntityType.GRN: ('status', 'unified_grn_status', 'CREATED'),
    EntityType.INVOICE: ('invoice_status', 'unified_invoice_status', 'RAISED'),
}


@dataclass(frozen=True)
class StatusContext:
    updated_by: str | None = None
    reason: str | None = None
    source: str = DEFAULT_SOURCE
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StatusUpdate:
    entity_type: EntityType
    entity_id: str
    legacy_update: dict[str, Any]
    unified_update: dict[str, Any]
    # Facts that are not part of either status vocabulary; written in every phase.
    common_update: dict[str, Any]
    previous_legacy_status: str | None
    new_legacy_status: str | None
    previous_unified_status: str | None
    new_unified_status: str
    validation: TransitionValidation
    context: StatusContext


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _value(status: Any) -> str:
    return str(getattr(status, 'value', status))


def prepare_status_update(
    entity_type: EntityType,
    entity_id: str,
    new_unified_status: Any,
    *,
    current_legacy_status: str | None = None,
    current_unified_status: str | None = None,
    context: StatusContext | None = None,
    legacy_extra: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> StatusUpdate:
    """Build the legacy and unified payloads for one status move without touching any row."""
    context = context or StatusContext()
    timestamp = now or _now()
    new_unified = _value(new_unified_status)
    legacy_field, unified_field, fallback = _STATUS_FIELDS[entity_type]

    baseline = current_unified_status or legacy_to_unified(entity_type, current_legacy_status)
    validation = validate_status_transition(entity_type, baseline, new_unified)

    legacy_update: dict[str, Any] = {}
    common_update: dict[str, Any] = {}
    if entity_type == EntityType.GRN:
        grn_status, legacy_status = GRN_UNIFIED_TO_LEGACY.get(new_unified, ('RAISED', 'CREATED'))
        legacy_update = {'grn_status': grn_status, 'status': legacy_status}
        new_legacy = f'{legacy_status}/{grn_status}'
        if new_unified == 'APPROVED':
            common_update = {
                'grn_acknowledged_by_company': True,
                'grn_acknowledged_at': timestamp,
                'grn_acknowledged_by': context.updated_by or 'system',
            }
    else:
        new_legacy = unified_to_legacy(entity_type, new_unified) or current_legacy_status or fallback
        legacy_update = {legacy_field: new_legacy}

    if entity_type == EntityType.SHIPMENT and new_unified == 'DELIVERED':
        common_update['delivered_at'] = timestamp
    if entity_type == EntityType.INVOICE and new_unified == 'REJECTED' and context.reason:
        common_update['rejection_reason'] = context.reason
    if legacy_extra:
        legacy_update.update(legacy_extra)

    unified_update = {
        unified_field: new_unified,
        f'{unified_field}_updated_at': timestamp,
        f'{unified_field}_updated_by': context.updated_by or context.source,
    }

    return StatusUpdate(
        entity_type=entity_type,
        entity_id=entity_id,
        legacy_update=legacy_update,
        unified_update=unified_update,
        common_update=common_update,
        previous_legacy_status=current_legacy_status,
        new_legacy_status=new_legacy,
        previous_unified_status=current_unified_status,
        new_unified_status=new_unified,
        validation=validation,
        context=context,
    )


def apply_status_update(
    db: Session,
    row: Any,
    update: StatusUpdate,
    flags: MigrationFlagState,
    *,
    strict: bool = True,
) -> dict[str, Any]:
    """
    Write the payloads the current phase allows onto ``row`` and record the change.

    With ``strict`` an invalid transition raises ``ValueError`` before anything is written.
    Returns the fields that were set.
    """
    if strict and not update.validation.valid:
        raise ValueError(update.validation.reason)
    if not update.validation.valid:
        logger.warning(
            '%s %s status write accepted despite invalid transition: %s',
            update.entity_type.value,
            update.entity_id,
            update.validation.reason,
        )

    written: dict[str, Any] = dict(update.common_update)
    if flags.writes_legacy:
        written.update(update.legacy_update)
    if flags.writes_unified:
        written.update(update.unified_update)
    for name, value in written.items():
        setattr(row, name, value)

    if isinstance(row, GRN):
        row.resolved_status = resolve_grn_status(row)
        written['resolved_status'] = row.resolved_status

    log_status_change(
        db,
        entity_type=update.entity_type,
        entity_id=update.entity_id,
        action='STATUS_UPDATE',
        source=update.context.source,
        previous_legacy_status=update.previous_legacy_status,
        new_legacy_status=update.new_legacy_status if flags.writes_legacy else update.previous_legacy_status,
        previous_unified_status=update.previous_unified_status,
        new_unified_status=update.new_unified_status if flags.writes_unified else update.previous_unified_status,
        updated_by=update.context.updated_by,
        metadata={
            **update.context.metadata,
            'reason': update.context.reason,
            'phase': flags.phase.value,
            'write_mode': flags.write_mode.value,
            'validation': update.validation.as_dict(),
        },
    )
    logger.info(
        '%s %s -> %s (phase=%s, write_mode=%s)',
        update.entity_type.value,
        update.entity_id,
        update.new_unified_status,
        flags.phase.value,
        flags.write_mode.value,
    )
    return written


def transition(
    db: Session,
    row: Any,
    entity_type: EntityType,
    entity_id: str,
    new_unified_status: Any,
    flags: MigrationFlagState,
    *,
    context: StatusContext | None = None,
    legacy_extra: dict[str, Any] | None = None,
    strict: bool = True,
) -> StatusUpdate:
    legacy_field, unified_field, _ = _STATUS_FIELDS[entity_type]
    if entity_type == EntityType.GRN:
        current_legacy = getattr(row, 'status', None) or (
            'ACKNOWLEDGED' if getattr(row, 'grn_status', None) == 'APPROVED' else None
        )
    else:
        current_legacy = getattr(row, legacy_field, None)
    update = prepare_status_update(
        entity_type,
        entity_id,
        new_unified_status,
        current_legacy_status=current_legacy,
        current_unified_status=getattr(row, unified_field, None),
        context=context,
        legacy_extra=legacy_extra,
    )
    apply_status_update(db, row, update, flags, strict=strict)
    return update


def _effective(entity_type: EntityType, legacy: str | None, unified: str | None, flags: MigrationFlagState) -> str | None:
    mapped = legacy_to_unified(entity_type, legacy)
    if flags.prefer_unified_reads:
        return unified or mapped
    return mapped or unified


def effective_order_status(order: Any, flags: MigrationFlagState) -> str | None:
    return _effective(EntityType.ORDER, getattr(order, 'status', None), getattr(order, 'unified_status', None), flags)


def effective_pr_status(order: Any, flags: MigrationFlagState) -> str | None:
    return _effective(
        EntityType.PR, getattr(order, 'pr_status', None), getattr(order, 'unified_pr_status', None), flags
    )
