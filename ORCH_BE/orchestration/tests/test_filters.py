from django.test import SimpleTestCase

from orchestration.exceptions import FilterValidationError
from orchestration.filters import (
    DEFAULT_FILTERS,
    excludes_all,
    normalize_filters,
    validate_filters,
)


class FilterNormalizationTests(SimpleTestCase):
    def test_missing_filters_use_defaults(self):
        self.assertEqual(normalize_filters(None), DEFAULT_FILTERS)
        filters = normalize_filters({})
        self.assertTrue(filters.include_active)
        self.assertFalse(filters.include_inactive)
        self.assertIsNone(filters.category_ids)

    def test_accepts_camel_and_snake_case(self):
        camel = normalize_filters({"includeInactive": True, "categoryIds": ["a", " b "]})
        snake = normalize_filters({"include_inactive": True, "category_ids": ["a", "b"]})
        self.assertEqual(camel, snake)
        self.assertEqual(camel.category_ids, ("a", "b"))

    def test_rejects_wrong_types(self):
        with self.assertRaises(FilterValidationError):
            normalize_filters({"includeActive": "yes"})
        with self.assertRaises(FilterValidationError):
            normalize_filters(["not", "a", "dict"])

    def test_all_means_no_restriction(self):
        filters = normalize_filters({"categoryIds": "all", "brandIds": "all"})
        self.assertIsNone(filters.category_ids)
        self.assertIsNone(filters.brand_ids)
        self.assertFalse(excludes_all(filters))
        self.assertEqual(validate_filters({"categoryIds": "all"}), DEFAULT_FILTERS)

    def test_round_trips_through_dict(self):
        filters = normalize_filters({"brandIds": ["b1"]})
        self.assertEqual(normalize_filters(filters.to_dict()), filters)


class ExcludesAllTests(SimpleTestCase):
    def test_both_activity_flags_off(self):
        filters = normalize_filters({"includeActive": False, "includeInactive": False})
        self.assertTrue(excludes_all(filters))

    def test_empty_allow_list_matches_nothing(self):
        self.assertTrue(excludes_all(normalize_filters({"categoryIds": []})))
        self.assertTrue(excludes_all(normalize_filters({"brandIds": []})))

    def test_null_allow_list_is_unrestricted(self):
        self.assertFalse(excludes_all(normalize_filters({"categoryIds": None})))

    def test_validate_rejects_empty_scope(self):
        with self.assertRaises(FilterValidationError) as ctx:
            validate_filters({"categoryIds": []})
        self.assertEqual(ctx.exception.get_codes(), ["invalid_filters"])

    def test_validate_returns_normalized_filters(self):
        filters = validate_filters({"includeInactive": True})
        self.assertTrue(filters.include_active)
        self.assertTrue(filters.include_inactive)
