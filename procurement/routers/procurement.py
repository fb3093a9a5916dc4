from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procurement.db import get_db
from procurement.dependencies import get_flags
from procurement.models import OrderType
from procurement.services.dual_write_service import effective_order_status, effective_pr_status
from procurement.services.eligibility_service import (
    OrderLineInput,
    get_remaining,
    increment_on_return_approval,
)
from procurement.services.grn_invoice_service import invoice_eligibility, raise_invoice
from procurement.services.migration_flags import MigrationFlagState
from procurement.services.order_lifecycle_service import place_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api', tags=['procurement'])


class OrderLinePayload(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class PlaceOrderPayload(BaseModel):
    employee_id: str
    items: list[OrderLinePayload] = Field(min_length=1)
    order_id: str | None = None
    pr_number: str | None = None
    company_id: str | None = None
    vendor_id: str | None = None
    is_replacement_order: bool = False
    original_order_id: str | None = None
    placed_by: str | None = None


class ReturnApprovalPayload(BaseModel):
    employee_id: str
    product_id: str
    quantity: int = Field(gt=0)
    return_request_id: str


class RaiseInvoicePayload(BaseModel):
    invoice_amount: Decimal = Field(gt=0)
    invoice_id: str | None = None
    vendor_id: str | None = None
    raised_by: str | None = None


@router.post('/orders', status_code=status.HTTP_201_CREATED)
def create_order(
    payload: PlaceOrderPayload,
    db: Session = Depends(get_db),
    flags: MigrationFlagState = Depends(get_flags),
):
    try:
        placed = place_order(
            db,
            employee_id=payload.employee_id,
            items=[OrderLineInput(product_ref=item.product_id, quantity=item.quantity) for item in payload.items],
            flags=flags,
            order_id=payload.order_id,
            pr_number=payload.pr_number,
            company_id=payload.company_id,
            vendor_id=payload.vendor_id,
            order_type=OrderType.REPLACEMENT if payload.is_replacement_order else OrderType.NORMAL,
            original_order_id=payload.original_order_id,
            placed_by=payload.placed_by,
        )
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()

    order = placed.order
    return {
        'order_id': order.id,
        'pr_number': order.pr_number,
        'order_type': order.order_type.value,
        'status': effective_order_status(order, flags),
        'pr_status': effective_pr_status(order, flags),
        'eligibility': {
            'success': placed.eligibility.success,
            'replayed': placed.eligibility.replayed,
            'decrements': [
                {
                    'category': change.category,
                    'quantity': change.quantity,
                    'previous_value': change.previous_value,
                    'new_value': change.new_value,
                }
                for change in placed.eligibility.decrements
            ],
            'errors': placed.eligibility.errors,
        },
    }


@router.post('/returns/approve')
def approve_return(payload: ReturnApprovalPayload, db: Session = Depends(get_db)):
    result = increment_on_return_approval(
        db,
        employee_id=payload.employee_id,
        product_ref=payload.product_id,
        quantity=payload.quantity,
        return_request_id=payload.return_request_id,
    )
    if not result.success:
        db.rollback()
        raise HTTPException(status_code=404, detail=result.error)
    db.commit()
    return {
        'category': result.increment.category,
        'previous_value': result.increment.previous_value,
        'new_value': result.increment.new_value,
    }


@router.get('/employees/{employee_id}/eligibility')
def employee_eligibility(employee_id: str, db: Session = Depends(get_db)):
    remaining = get_remaining(db, employee_id=employee_id)
    if remaining is None:
        raise HTTPException(status_code=404, detail=f'Employee not found: {employee_id}')
    return {'employee_id': employee_id, 'remaining': remaining}


@router.get('/grns/{grn_id}/invoice-eligibility')
def grn_invoice_eligibility(grn_id: str, db: Session = Depends(get_db)):
    try:
        return invoice_eligibility(db, grn_id).as_dict()
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post('/grns/{grn_id}/invoices', status_code=status.HTTP_201_CREATED)
def create_invoice(
    grn_id: str,
    payload: RaiseInvoicePayload,
    db: Session = Depends(get_db),
    flags: MigrationFlagState = Depends(get_flags),
):
    try:
        invoice = raise_invoice(
            db,
            grn_id=grn_id,
            invoice_amount=payload.invoice_amount,
            flags=flags,
            invoice_id=payload.invoice_id,
            vendor_id=payload.vendor_id,
            raised_by=payload.raised_by,
        )
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    logger.info('Invoice %s raised against GRN %s via API', invoice.invoice_id, grn_id)
    return {
        'invoice_id': invoice.invoice_id,
        'grn_id': invoice.grn_id,
        'invoice_amount': str(invoice.invoice_amount),
        'invoice_status': invoice.unified_invoice_status or invoice.invoice_status,
    }


@router.get('/migration/phase')
def migration_phase(flags: MigrationFlagState = Depends(get_flags)):
    return flags.as_dict()
