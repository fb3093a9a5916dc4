from __future__ import annotations

import unittest

from db_helpers import make_session, seed_catalog

from procurement.services.category_resolver import (
    CategoryNotFound,
    ProductNotFound,
    normalize_category_name,
    resolve_category,
    resolve_product_category,
)


class NormalizeCategoryNameTests(unittest.TestCase):
    def test_synonyms_and_case(self) -> None:
        self.assertEqual(normalize_category_name('  Shirts '), 'shirt')
        self.assertEqual(normalize_category_name('TROUSERS'), 'pant')
        self.assertEqual(normalize_category_name('Blazer'), 'jacket')
        self.assertEqual(normalize_category_name('Belt'), 'belt')
        self.assertEqual(normalize_category_name(None), '')


class ResolveCategoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        seed_catalog(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def test_by_id(self) -> None:
        resolved = resolve_category(self.db, company_id='C1', category_ref='cat-shirt')
        self.assertEqual(resolved.name, 'shirt')
        self.assertEqual(resolved.category_id, 'cat-shirt')

    def test_by_name_is_case_insensitive(self) -> None:
        resolved = resolve_category(self.db, company_id='C1', category_ref='PANT')
        self.assertEqual(resolved.category_id, 'cat-pant')

    def test_by_legacy_synonym(self) -> None:
        resolved = resolve_category(self.db, company_id='C1', category_ref='shirts')
        self.assertEqual(resolved.category_id, 'cat-shirt')

    def test_inactive_category_is_not_matched_by_name(self) -> None:
        self.assertIsNone(resolve_category(self.db, company_id='C1', category_ref='jacket'))

    def test_inactive_category_is_not_matched_by_id(self) -> None:
        self.assertIsNone(resolve_category(self.db, company_id='C1', category_ref='cat-jacket-old'))

    def test_scoped_to_company(self) -> None:
        self.assertIsNone(resolve_category(self.db, company_id='C1', category_ref='cat-c2-shirt'))
        resolved = resolve_category(self.db, company_id='C2', category_ref='shirt')
        self.assertEqual(resolved.category_id, 'cat-c2-shirt')

    def test_missing_company_returns_none(self) -> None:
        self.assertIsNone(resolve_category(self.db, company_id=None, category_ref='shirt'))


class ResolveProductCategoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        seed_catalog(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def test_structured_category(self) -> None:
        resolved = resolve_product_category(self.db, company_id='C1', product_ref='P-SHIRT')
        self.assertEqual(resolved.name, 'shirt')
        self.assertEqual(resolved.product_id, 'P-SHIRT')

    def test_free_text_category_matches_row_through_synonym(self) -> None:
        resolved = resolve_product_category(self.db, company_id='C1', product_ref='P-TROUSER')
        self.assertEqual(resolved.name, 'pant')
        self.assertEqual(resolved.category_id, 'cat-pant')

    def test_free_text_category_without_row_is_normalized(self) -> None:
        resolved = resolve_product_category(self.db, company_id='C1', product_ref='P-SHOES')
        self.assertEqual(resolved.name, 'shoe')
        self.assertIsNone(resolved.category_id)

    def test_falls_back_to_product_company(self) -> None:
        resolved = resolve_product_category(self.db, company_id=None, product_ref='P-PANT')
        self.assertEqual(resolved.name, 'pant')

    def test_unknown_product(self) -> None:
        with self.assertRaises(ProductNotFound):
            resolve_product_category(self.db, company_id='C1', product_ref='P-NOPE')

    def test_category_from_other_company(self) -> None:
        with self.assertRaises(CategoryNotFound):
            resolve_product_category(self.db, company_id='C1', product_ref='P-FOREIGN')

    def test_product_without_any_category(self) -> None:
        with self.assertRaises(LookupError):
            resolve_product_category(self.db, company_id='C1', product_ref='P-NOCAT')


if __name__ == '__main__':
    unittest.main()
