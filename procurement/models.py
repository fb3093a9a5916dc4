from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class OrderType(str, Enum):
    NORMAL = 'NORMAL'
    REPLACEMENT = 'REPLACEMENT'


class EligibilityEventKind(str, Enum):
    DECREMENT = 'DECREMENT'
    INCREMENT = 'INCREMENT'


class EntityType(str, Enum):
    ORDER = 'Order'
    PR = 'PR'
    SHIPMENT = 'Shipment'
    GRN = 'GRN'
    INVOICE = 'Invoice'


class GRNResolvedStatus(str, Enum):
    RAISED = 'RAISED'
    APPROVED = 'APPROVED'
    INVOICED = 'INVOICED'
    CLOSED = 'CLOSED'


class Company(Base):
    __tablename__ = 'companies'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductCategory(Base):
    __tablename__ = 'product_categories'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    company_id: Mapped[str] = mapped_column(Text, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default='active', server_default='active')
    is_system_category: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Product(Base):
    __tablename__ = 'products'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    company_id: Mapped[str | None] = mapped_column(Text, ForeignKey('companies.id'))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[str | None] = mapped_column(Text, ForeignKey('product_categories.id'))
    # Free-text category carried by products created before categories were structured.
    category: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Employee(Base):
    __tablename__ = 'employees'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    employee_code: Mapped[str | None] = mapped_column(Text, unique=True)
    company_id: Mapped[str | None] = mapped_column(Text, ForeignKey('companies.id'))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    # category name (lowercase) -> remaining units
    eligibility: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class EligibilityEvent(Base):
    __tablename__ = 'eligibility_events'
    __table_args__ = (
        CheckConstraint('quantity >= 0', name='eligibility_events_quantity_ck'),
        CheckConstraint('new_value >= 0', name='eligibility_events_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    employee_id: Mapped[str] = mapped_column(Text, ForeignKey('employees.id', ondelete='CASCADE'), nullable=False, index=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[EligibilityEventKind] = mapped_column(
        SQLEnum(EligibilityEventKind, name='eligibility_event_kind'), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_value: Mapped[int] = mapped_column(Integer, nullable=False)
    new_value: Mapped[int] = mapped_column(Integer, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    source_ref: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    pr_number: Mapped[str | None] = mapped_column(Text, index=True)
    order_type: Mapped[OrderType] = mapped_column(
        SQLEnum(OrderType, name='order_type'), nullable=False, default=OrderType.NORMAL, server_default='NORMAL'
    )
    employee_id: Mapped[str | None] = mapped_column(Text)
    company_id: Mapped[str | None] = mapped_column(Text)
    vendor_id: Mapped[str | None] = mapped_column(Text)
    original_order_id: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str | None] = mapped_column(Text)
    pr_status: Mapped[str | None] = mapped_column(Text)
    dispatch_status: Mapped[str | None] = mapped_column(Text)
    delivery_status: Mapped[str | None] = mapped_column(Text)

    unified_status: Mapped[str | None] = mapped_column(Text)
    unified_status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unified_status_updated_by: Mapped[str | None] = mapped_column(Text)
    unified_pr_status: Mapped[str | None] = mapped_column(Text)
    unified_pr_status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unified_pr_status_updated_by: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OrderItem(Base):
    __tablename__ = 'order_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='order_items_positive_qty_ck'),
    )

    order_id: Mapped[str] = mapped_column(Text, ForeignKey('orders.id', ondelete='CASCADE'), primary_key=True)
    line_no: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class Shipment(Base):
    __tablename__ = 'shipments'

    shipment_id: Mapped[str] = mapped_column(Text, primary_key=True)
    # Logical reference to orders.pr_number; not enforced as a foreign key.
    pr_number: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    shipment_status: Mapped[str | None] = mapped_column(Text)
    courier_status: Mapped[str | None] = mapped_column(Text)
    unified_shipment_status: Mapped[str | None] = mapped_column(Text)
    unified_shipment_status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unified_shipment_status_updated_by: Mapped[str | None] = mapped_column(Text)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class GRN(Base):
    __tablename__ = 'grns'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    grn_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    po_number: Mapped[str | None] = mapped_column(Text)
    pr_number: Mapped[str | None] = mapped_column(Text)
    vendor_id: Mapped[str | None] = mapped_column(Text)
    company_id: Mapped[str | None] = mapped_column(Text)

    grn_status: Mapped[str | None] = mapped_column(Text, default='RAISED', server_default='RAISED')
    status: Mapped[str | None] = mapped_column(Text)
    grn_acknowledged_by_company: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default='false'
    )
    grn_acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    grn_acknowledged_by: Mapped[str | None] = mapped_column(Text)

    unified_grn_status: Mapped[str | None] = mapped_column(Text)
    unified_grn_status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unified_grn_status_updated_by: Mapped[str | None] = mapped_column(Text)
    resolved_status: Mapped[GRNResolvedStatus] = mapped_column(
        SQLEnum(GRNResolvedStatus, name='grn_resolved_status'),
        nullable=False,
        default=GRNResolvedStatus.RAISED,
        server_default='RAISED',
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class GRNLine(Base):
    __tablename__ = 'grn_lines'
    __table_args__ = (
        CheckConstraint('ordered_qty >= 0', name='grn_lines_ordered_non_negative_ck'),
        CheckConstraint('delivered_qty >= 0', name='grn_lines_delivered_non_negative_ck'),
        CheckConstraint('rejected_qty >= 0', name='grn_lines_rejected_non_negative_ck'),
    )

    grn_id: Mapped[str] = mapped_column(Text, ForeignKey('grns.id', ondelete='CASCADE'), primary_key=True)
    line_no: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    ordered_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejected_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    condition: Mapped[str | None] = mapped_column(Text)


class Invoice(Base):
    __tablename__ = 'invoices'

    invoice_id: Mapped[str] = mapped_column(Text, primary_key=True)
    grn_id: Mapped[str] = mapped_column(Text, ForeignKey('grns.id'), nullable=False, index=True)
    vendor_id: Mapped[str | None] = mapped_column(Text)
    invoice_status: Mapped[str | None] = mapped_column(Text, default='RAISED', server_default='RAISED')
    unified_invoice_status: Mapped[str | None] = mapped_column(Text)
    unified_invoice_status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unified_invoice_status_updated_by: Mapped[str | None] = mapped_column(Text)
    invoice_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StatusMigrationLog(Base):
    __tablename__ = 'status_migration_logs'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType, name='status_entity_type'), nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    previous_legacy_status: Mapped[str | None] = mapped_column(Text)
    new_legacy_status: Mapped[str | None] = mapped_column(Text)
    previous_unified_status: Mapped[str | None] = mapped_column(Text)
    new_unified_status: Mapped[str | None] = mapped_column(Text)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
