from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from procurement.models import Product, ProductCategory

logger = logging.getLogger(__name__)

LEGACY_CATEGORY_SYNONYMS: dict[str, str] = {
    'shirt': 'shirt',
    'shirts': 'shirt',
    'pant': 'pant',
    'pants': 'pant',
    'trouser': 'pant',
    'trousers': 'pant',
    'shoe': 'shoe',
    'shoes': 'shoe',
    'jacket': 'jacket',
    'jackets': 'jacket',
    'blazer': 'jacket',
    'blazers': 'jacket',
    'accessory': 'accessory',
    'accessories': 'accessory',
}


class ProductNotFound(LookupError):
    pass


class CategoryNotFound(LookupError):
    pass


@dataclass(frozen=True)
class ResolvedCategory:
    name: str
    category_id: str | None
    product_id: str | None = None


def normalize_category_name(raw: str | None) -> str:
    if not raw:
        return ''
    lowered = raw.strip().lower()
    return LEGACY_CATEGORY_SYNONYMS.get(lowered, lowered)


def _active_by_name(db: Session, *, company_id: str, name: str) -> ProductCategory | None:
    return db.execute(
        select(ProductCategory)
        .where(
            ProductCategory.company_id == company_id,
            func.lower(ProductCategory.name) == name.strip().lower(),
            ProductCategory.status == 'active',
        )
        .order_by(ProductCategory.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def resolve_category(db: Session, *, company_id: str | None, category_ref: str) -> ResolvedCategory | None:
    """Look up a category by id, then by name, then by legacy synonym, within one company."""
    ref = (category_ref or '').strip()
    if not ref or not company_id:
        return None

    category = db.execute(
        select(ProductCategory).where(
            ProductCategory.company_id == company_id,
            ProductCategory.id == ref,
            ProductCategory.status == 'active',
        )
    ).scalar_one_or_none()
    if category is None:
        category = _active_by_name(db, company_id=company_id, name=ref)
    if category is None:
        mapped = LEGACY_CATEGORY_SYNONYMS.get(ref.lower())
        if mapped:
            category = _active_by_name(db, company_id=company_id, name=mapped)

    if category is None:
        return None
    return ResolvedCategory(name=category.name.strip().lower(), category_id=category.id)


def resolve_product_category(db: Session, *, company_id: str | None, product_ref: str) -> ResolvedCategory:
    product = db.execute(select(Product).where(Product.id == product_ref)).scalar_one_or_none()
    if product is None:
        raise ProductNotFound(f'Product not found: {product_ref}')

    scope = company_id or product.company_id
    if product.category_id:
        resolved = resolve_category(db, company_id=scope, category_ref=product.category_id)
        if resolved is None:
            raise CategoryNotFound(f'Category not found for product: {product_ref}')
        return ResolvedCategory(name=resolved.name, category_id=resolved.category_id, product_id=product.id)

    if product.category:
        resolved = resolve_category(db, company_id=scope, category_ref=product.category)
        if resolved is not None:
            return ResolvedCategory(name=resolved.name, category_id=resolved.category_id, product_id=product.id)
        # Products predating structured categories keep their free-text name.
        name = normalize_category_name(product.category)
        if name:
            logger.debug('Product %s resolved to free-text category %r', product_ref, name)
            return ResolvedCategory(name=name, category_id=None, product_id=product.id)

    raise CategoryNotFound(f'Category not found for product: {product_ref}')
