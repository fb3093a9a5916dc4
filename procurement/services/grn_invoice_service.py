from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import GRN, EntityType, GRNLine, Invoice
from procurement.services.dual_write_service import StatusContext, transition
from procurement.services.migration_flags import MigrationFlagState
from procurement.services.status_model import (
    InvoiceStatus,
    UnifiedGRNStatus,
    can_raise_invoice,
    has_non_rejected_invoice,
    is_grn_approved,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GRNLineInput:
    product_id: str
    ordered_qty: int
    delivered_qty: int
    rejected_qty: int = 0
    condition: str | None = None


@dataclass(frozen=True)
class InvoiceEligibility:
    grn_id: str
    approved: bool
    has_open_invoice: bool

    @property
    def can_raise_invoice(self) -> bool:
        return self.approved and not self.has_open_invoice

    def as_dict(self) -> dict:
        return {
            'grn_id': self.grn_id,
            'approved': self.approved,
            'has_open_invoice': self.has_open_invoice,
            'can_raise_invoice': self.can_raise_invoice,
        }


def get_grn(db: Session, grn_id: str) -> GRN:
    grn = db.get(GRN, grn_id)
    if grn is None:
        raise LookupError(f'GRN not found: {grn_id}')
    return grn


def list_invoices_for_grn(db: Session, grn_id: str) -> list[Invoice]:
    return db.execute(
        select(Invoice).where(Invoice.grn_id == grn_id).order_by(Invoice.created_at.asc(), Invoice.invoice_id.asc())
    ).scalars().all()


def raise_grn(
    db: Session,
    *,
    grn_number: str,
    lines: Sequence[GRNLineInput],
    flags: MigrationFlagState,
    grn_id: str | None = None,
    po_number: str | None = None,
    pr_number: str | None = None,
    vendor_id: str | None = None,
    company_id: str | None = None,
    raised_by: str | None = None,
) -> GRN:
    if not lines:
        raise ValueError('GRN must contain at least one line')
    for line in lines:
        if min(line.ordered_qty, line.delivered_qty, line.rejected_qty) < 0:
            raise ValueError(f'GRN quantities cannot be negative for {line.product_id}')
        if line.rejected_qty > line.delivered_qty:
            raise ValueError(f'Rejected quantity exceeds delivered quantity for {line.product_id}')

    grn_id = grn_id or f'GRN-{uuid4().hex[:12].upper()}'
    grn = GRN(
        id=grn_id,
        grn_number=grn_number,
        po_number=po_number,
        pr_number=pr_number,
        vendor_id=vendor_id,
        company_id=company_id,
    )
    db.add(grn)
    for line_no, line in enumerate(lines, start=1):
        db.add(
            GRNLine(
                grn_id=grn_id,
                line_no=line_no,
                product_id=line.product_id,
                ordered_qty=line.ordered_qty,
                delivered_qty=line.delivered_qty,
                rejected_qty=line.rejected_qty,
                condition=line.condition,
            )
        )
    transition(
        db,
        grn,
        EntityType.GRN,
        grn_id,
        UnifiedGRNStatus.RAISED,
        flags,
        context=StatusContext(updated_by=raised_by, source='vendor-grn'),
    )
    db.flush()
    logger.info('Raised GRN %s (%s) with %s line(s)', grn_number, grn_id, len(lines))
    return grn


def acknowledge_grn(
    db: Session,
    *,
    grn_id: str,
    flags: MigrationFlagState,
    acknowledged_by: str,
) -> GRN:
    grn = get_grn(db, grn_id)
    if is_grn_approved(grn):
        logger.info('GRN %s already approved; acknowledgment is a no-op', grn_id)
        return grn
    transition(
        db,
        grn,
        EntityType.GRN,
        grn_id,
        UnifiedGRNStatus.APPROVED,
        flags,
        context=StatusContext(updated_by=acknowledged_by, source='company-grn-approval'),
    )
    db.flush()
    return grn


def invoice_eligibility(db: Session, grn_id: str) -> InvoiceEligibility:
    grn = get_grn(db, grn_id)
    invoices = list_invoices_for_grn(db, grn_id)
    return InvoiceEligibility(
        grn_id=grn.id,
        approved=is_grn_approved(grn),
        has_open_invoice=has_non_rejected_invoice(grn.id, invoices),
    )


def raise_invoice(
    db: Session,
    *,
    grn_id: str,
    invoice_amount: Decimal,
    flags: MigrationFlagState,
    invoice_id: str | None = None,
    vendor_id: str | None = None,
    raised_by: str | None = None,
) -> Invoice:
    grn = get_grn(db, grn_id)
    invoices = list_invoices_for_grn(db, grn_id)
    if not can_raise_invoice(grn, invoices):
        if not is_grn_approved(grn):
            raise ValueError(f'GRN {grn.grn_number} is not approved for invoicing')
        raise ValueError(f'GRN {grn.grn_number} already has an open invoice')
    if invoice_amount <= 0:
        raise ValueError('Invoice amount must be positive')

    invoice_id = invoice_id or f'INV-{uuid4().hex[:12].upper()}'
    invoice = Invoice(
        invoice_id=invoice_id,
        grn_id=grn.id,
        vendor_id=vendor_id or grn.vendor_id,
        invoice_amount=invoice_amount,
    )
    db.add(invoice)
    transition(
        db,
        invoice,
        EntityType.INVOICE,
        invoice_id,
        InvoiceStatus.RAISED,
        flags,
        context=StatusContext(updated_by=raised_by, source='vendor-invoice'),
    )
    if grn.unified_grn_status != UnifiedGRNStatus.INVOICED.value:
        transition(
            db,
            grn,
            EntityType.GRN,
            grn.id,
            UnifiedGRNStatus.INVOICED,
            flags,
            context=StatusContext(updated_by=raised_by, source='vendor-invoice'),
            strict=False,
        )
    db.flush()
    logger.info('Raised invoice %s for GRN %s amount=%s', invoice_id, grn.grn_number, invoice_amount)
    return invoice


def _get_invoice(db: Session, invoice_id: str) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise LookupError(f'Invoice not found: {invoice_id}')
    return invoice


def approve_invoice(db: Session, *, invoice_id: str, flags: MigrationFlagState, approved_by: str) -> Invoice:
    invoice = _get_invoice(db, invoice_id)
    transition(
        db,
        invoice,
        EntityType.INVOICE,
        invoice_id,
        InvoiceStatus.APPROVED,
        flags,
        context=StatusContext(updated_by=approved_by, source='company-invoice-approval'),
    )
    db.flush()
    return invoice


def reject_invoice(
    db: Session,
    *,
    invoice_id: str,
    flags: MigrationFlagState,
    rejected_by: str,
    reason: str,
) -> Invoice:
    if not reason or not reason.strip():
        raise ValueError('Rejection reason is required')
    invoice = _get_invoice(db, invoice_id)
    transition(
        db,
        invoice,
        EntityType.INVOICE,
        invoice_id,
        InvoiceStatus.REJECTED,
        flags,
        context=StatusContext(updated_by=rejected_by, reason=reason.strip(), source='company-invoice-approval'),
    )
    db.flush()
    return invoice
