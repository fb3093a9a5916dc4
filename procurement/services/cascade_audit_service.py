from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import and_, create_engine, event, exists, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from procurement.models import Order, Shipment
from procurement.services.status_model import (
    DELIVERY_DELIVERED,
    DISPATCH_SHIPPED,
    LEGACY_PR_FULLY_DELIVERED,
    UnifiedPRStatus,
    is_shipment_delivered,
)

logger = logging.getLogger(__name__)

SEVERITIES = ('critical', 'major', 'minor')

ROOT_CAUSES: dict[str, str] = {
    'MISSING_SHIPMENT_RECORD': 'Missing Shipment Record',
    'SHIPMENT_NOT_DELIVERED': 'Shipment Exists But Not Delivered',
    'MANUAL_STATUS_OVERRIDE': 'Manual Status Override (no shipment flow)',
    'STATUS_MISMATCH': 'Legacy/Unified Status Mismatch',
    'ORPHANED_PR': 'Orphaned PR (no valid workflow)',
    'DATA_MIGRATION_ARTIFACT': 'Data Migration Artifact',
    'UNKNOWN': 'Unknown Root Cause',
}

RECOMMENDATIONS: dict[str, str] = {
    'MISSING_SHIPMENT_RECORD': 'Create shipment record retroactively OR mark PR as manually fulfilled',
    'SHIPMENT_NOT_DELIVERED': 'Update shipment status to DELIVERED to complete cascade',
    'MANUAL_STATUS_OVERRIDE': 'Document as manual fulfillment, no action needed if intentional',
    'STATUS_MISMATCH': 'Run status consistency repair to align unified_pr_status',
    'ORPHANED_PR': 'Archive or delete if test data; investigate if production data',
    'DATA_MIGRATION_ARTIFACT': 'Document as legacy data; consider cleanup migration',
    'UNKNOWN': 'Manual investigation required',
}

SEVERITY_ACTIONS: dict[str, list[str]] = {
    'critical': ['Run status consistency repair for mismatched unified_pr_status values'],
    'major': [
        'Create missing shipment records for PRs with SHIPPED status',
        'OR mark these PRs as manually fulfilled outside shipment flow',
    ],
    'minor': [
        'Document as known data quality exceptions',
        'Consider cleanup during next maintenance window',
    ],
}

# Substrings of unified_pr_status_updated_by, checked in order.
_CONVERSION_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ('migration', ('migration', 'script')),
    ('auto', ('dual-write', 'cascade')),
    ('manual', ('admin', 'manual')),
)


class ReadOnlySessionError(RuntimeError):
    pass


@dataclass(frozen=True)
class AuditCandidate:
    id: str
    pr_number: str
    legacy: dict[str, Any]
    unified: dict[str, Any]
    metadata: dict[str, Any]
    shipment: dict[str, Any] | None
    conversion_type: str

    @property
    def has_shipment(self) -> bool:
        return self.shipment is not None

    @property
    def shipment_status(self) -> str | None:
        if self.shipment is None:
            return None
        return self.shipment.get('shipment_status') or self.shipment.get('unified_shipment_status')


@dataclass(frozen=True)
class Classification:
    root_cause: str
    severity: str

    @property
    def label(self) -> str:
        return ROOT_CAUSES[self.root_cause]

    @property
    def recommendation(self) -> str:
        return RECOMMENDATIONS.get(self.root_cause, RECOMMENDATIONS['UNKNOWN'])


@dataclass(frozen=True)
class ClassificationRule:
    predicate: Callable[[AuditCandidate], bool]
    root_cause: str
    severity: str


@dataclass
class AuditFinding:
    candidate: AuditCandidate
    classification: Classification


@dataclass
class AuditReport:
    generated_at: datetime
    dry_run: bool
    findings: list[AuditFinding] = field(default_factory=list)

    def as_dict(self) -> dict:
        severities = Counter(f.classification.severity for f in self.findings)
        root_causes = Counter(f.classification.root_cause for f in self.findings)
        conversions = Counter(f.candidate.conversion_type for f in self.findings)
        with_shipment = sum(1 for f in self.findings if f.candidate.has_shipment)
        return {
            'generated_at': self.generated_at.isoformat(),
            'dry_run': self.dry_run,
            'total_records': len(self.findings),
            'by_severity': {severity: severities.get(severity, 0) for severity in SEVERITIES},
            'by_root_cause': dict(sorted(root_causes.items())),
            'by_conversion_type': dict(sorted(conversions.items())),
            'shipment_status': {'with': with_shipment, 'without': len(self.findings) - with_shipment},
            'recommended_actions': {
                severity: SEVERITY_ACTIONS[severity] for severity in SEVERITIES if severities.get(severity)
            },
            'details': [_detail(f) for f in self.findings],
        }


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return {key: _iso(value) for key, value in values.items()}


def _detail(finding: AuditFinding) -> dict:
    candidate = finding.candidate
    return {
        'id': candidate.id,
        'pr_number': candidate.pr_number,
        'legacy': _jsonable(candidate.legacy),
        'unified': _jsonable(candidate.unified),
        'metadata': _jsonable(candidate.metadata),
        'has_shipment': candidate.has_shipment,
        'shipment': _jsonable(candidate.shipment) if candidate.shipment else None,
        'root_cause': finding.classification.root_cause,
        'root_cause_label': finding.classification.label,
        'severity': finding.classification.severity,
        'conversion_type': candidate.conversion_type,
        'recommendation': finding.classification.recommendation,
    }


def conversion_type(updated_by: str | None) -> str:
    if not updated_by:
        return 'unknown'
    for kind, markers in _CONVERSION_MARKERS:
        if any(marker in updated_by for marker in markers):
            return kind
    return 'unknown'


def _claims_delivered(candidate: AuditCandidate) -> bool:
    return (
        candidate.legacy.get('delivery_status') == DELIVERY_DELIVERED
        or candidate.legacy.get('pr_status') == LEGACY_PR_FULLY_DELIVERED
    )


def _is_migration_artifact(candidate: AuditCandidate) -> bool:
    return candidate.conversion_type == 'migration' and not candidate.has_shipment


def _is_manual_override(candidate: AuditCandidate) -> bool:
    return not candidate.has_shipment and _claims_delivered(candidate)


def _is_missing_shipment(candidate: AuditCandidate) -> bool:
    return not candidate.has_shipment and candidate.legacy.get('dispatch_status') == DISPATCH_SHIPPED


def _is_orphaned(candidate: AuditCandidate) -> bool:
    return not candidate.has_shipment


def _is_shipment_not_delivered(candidate: AuditCandidate) -> bool:
    return candidate.has_shipment and not is_shipment_delivered(candidate.shipment_status)


def _is_status_mismatch(candidate: AuditCandidate) -> bool:
    return (
        candidate.has_shipment
        and is_shipment_delivered(candidate.shipment_status)
        and candidate.unified.get('unified_pr_status') != UnifiedPRStatus.FULLY_DELIVERED.value
    )


# Evaluated in order; the first matching rule classifies the record.
RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(_is_migration_artifact, 'DATA_MIGRATION_ARTIFACT', 'minor'),
    ClassificationRule(_is_manual_override, 'MANUAL_STATUS_OVERRIDE', 'minor'),
    ClassificationRule(_is_missing_shipment, 'MISSING_SHIPMENT_RECORD', 'major'),
    ClassificationRule(_is_orphaned, 'ORPHANED_PR', 'minor'),
    ClassificationRule(_is_shipment_not_delivered, 'SHIPMENT_NOT_DELIVERED', 'major'),
    ClassificationRule(_is_status_mismatch, 'STATUS_MISMATCH', 'critical'),
)

FALLBACK = Classification(root_cause='UNKNOWN', severity='minor')


def classify(candidate: AuditCandidate, rules: Iterable[ClassificationRule] = RULES) -> Classification:
    for rule in rules:
        if rule.predicate(candidate):
            return Classification(root_cause=rule.root_cause, severity=rule.severity)
    return FALLBACK


def find_candidate_orders(db: Session) -> list[Order]:
    """
    Orders whose legacy fields claim shipment or delivery that the unified PR status or the
    shipments table does not back up. Both queries are unioned and deduplicated by id.
    """
    claims_progress = select(Order).where(
        Order.pr_number.is_not(None),
        or_(
            Order.pr_status == LEGACY_PR_FULLY_DELIVERED,
            Order.delivery_status == DELIVERY_DELIVERED,
            Order.dispatch_status == DISPATCH_SHIPPED,
        ),
        or_(
            Order.unified_pr_status.is_(None),
            Order.unified_pr_status != UnifiedPRStatus.FULLY_DELIVERED.value,
        ),
    )
    no_shipment = select(Order).where(
        Order.pr_number.is_not(None),
        ~exists().where(Shipment.pr_number == Order.pr_number),
        or_(
            and_(Order.dispatch_status.is_not(None), Order.dispatch_status != ''),
            Order.unified_pr_status == UnifiedPRStatus.IN_SHIPMENT.value,
        ),
    )

    by_id: dict[str, Order] = {}
    first = db.execute(claims_progress.order_by(Order.id.asc())).scalars().all()
    logger.info('Found %s orders with legacy delivery claims not reflected in unified_pr_status', len(first))
    second = db.execute(no_shipment.order_by(Order.id.asc())).scalars().all()
    logger.info('Found %s orders with shipment status but no shipment record', len(second))
    for order in [*first, *second]:
        by_id.setdefault(order.id, order)
    return list(by_id.values())


def _shipments_by_pr(db: Session, pr_numbers: set[str]) -> dict[str, Shipment]:
    if not pr_numbers:
        return {}
    rows = db.execute(
        select(Shipment)
        .where(Shipment.pr_number.in_(sorted(pr_numbers)))
        .order_by(Shipment.created_at.asc(), Shipment.shipment_id.asc())
    ).scalars().all()
    shipments: dict[str, Shipment] = {}
    for row in rows:
        shipments.setdefault(row.pr_number, row)
    return shipments


def enrich(order: Order, shipment: Shipment | None) -> AuditCandidate:
    return AuditCandidate(
        id=order.id,
        pr_number=order.pr_number,
        legacy={
            'status': order.status,
            'pr_status': order.pr_status,
            'dispatch_status': order.dispatch_status,
            'delivery_status': order.delivery_status,
        },
        unified={
            'unified_status': order.unified_status,
            'unified_pr_status': order.unified_pr_status,
            'unified_status_updated_at': order.unified_status_updated_at,
            'unified_status_updated_by': order.unified_status_updated_by,
            'unified_pr_status_updated_at': order.unified_pr_status_updated_at,
            'unified_pr_status_updated_by': order.unified_pr_status_updated_by,
        },
        metadata={
            'company_id': order.company_id,
            'vendor_id': order.vendor_id,
            'employee_id': order.employee_id,
            'created_at': order.created_at,
            'updated_at': order.updated_at,
        },
        shipment=None
        if shipment is None
        else {
            'shipment_id': shipment.shipment_id,
            'pr_number': shipment.pr_number,
            'shipment_status': shipment.shipment_status,
            'courier_status': shipment.courier_status,
            'unified_shipment_status': shipment.unified_shipment_status,
            'created_at': shipment.created_at,
            'updated_at': shipment.updated_at,
        },
        conversion_type=conversion_type(order.unified_pr_status_updated_by),
    )


def run_audit(db: Session, *, dry_run: bool = True, now: datetime | None = None) -> AuditReport:
    orders = find_candidate_orders(db)
    shipments = _shipments_by_pr(db, {order.pr_number for order in orders})
    report = AuditReport(generated_at=now or datetime.now(tz=timezone.utc), dry_run=dry_run)
    for order in orders:
        candidate = enrich(order, shipments.get(order.pr_number))
        report.findings.append(AuditFinding(candidate=candidate, classification=classify(candidate)))

    counts = Counter(f.classification.severity for f in report.findings)
    logger.info(
        'Cascade audit classified %s record(s): critical=%s major=%s minor=%s',
        len(report.findings),
        counts.get('critical', 0),
        counts.get('major', 0),
        counts.get('minor', 0),
    )
    return report


def write_report(report: AuditReport, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(report.as_dict(), indent=2), encoding='utf-8')
    logger.info('Cascade audit report saved to %s', target)
    return target


def create_read_only_engine(url: str) -> Engine:
    if url.startswith('sqlite'):
        return create_engine(url)
    connect_args = {}
    if url.startswith('postgresql'):
        connect_args['options'] = '-c default_transaction_read_only=on'
    return create_engine(url, pool_size=2, max_overflow=0, pool_pre_ping=True, connect_args=connect_args)


def _reject_flush(session: Session, flush_context, instances) -> None:
    raise ReadOnlySessionError('Cascade audit session is read-only; refusing to flush changes')


def read_only_sessionmaker(engine: Engine) -> sessionmaker:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    event.listen(factory, 'before_flush', _reject_flush)
    return factory
