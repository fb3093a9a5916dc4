from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import EntityType, StatusMigrationLog


def log_status_change(
    db: Session,
    *,
    entity_type: EntityType,
    entity_id: str,
    action: str,
    source: str,
    previous_legacy_status: str | None = None,
    new_legacy_status: str | None = None,
    previous_unified_status: str | None = None,
    new_unified_status: str | None = None,
    updated_by: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        StatusMigrationLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            previous_legacy_status=previous_legacy_status,
            new_legacy_status=new_legacy_status,
            previous_unified_status=previous_unified_status,
            new_unified_status=new_unified_status,
            source=source,
            updated_by=updated_by,
            meta=metadata or {},
        )
    )


def list_status_changes(db: Session, *, entity_type: EntityType, entity_id: str) -> list[StatusMigrationLog]:
    return db.execute(
        select(StatusMigrationLog)
        .where(StatusMigrationLog.entity_type == entity_type, StatusMigrationLog.entity_id == entity_id)
        .order_by(StatusMigrationLog.id.asc())
    ).scalars().all()
