"""
Product filter normalization for sync and scan scopes.

An absent allow-list (None) means "no restriction". An empty list means "match
nothing". The two must never be conflated.
"""
from dataclasses import dataclass
from typing import Any

from .exceptions import FilterValidationError


@dataclass(frozen=True)
class ProductFilters:
    include_active: bool = True
    include_inactive: bool = False
    category_ids: tuple[str, ...] | None = None
    brand_ids: tuple[str, ...] | None = None

    def to_dict(self) -> dict:
        return {
            "includeActive": self.include_active,
            "includeInactive": self.include_inactive,
            "categoryIds": list(self.category_ids) if self.category_ids is not None else None,
            "brandIds": list(self.brand_ids) if self.brand_ids is not None else None,
        }


DEFAULT_FILTERS = ProductFilters()


def _normalize_flag(value: Any, default: bool, field: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise FilterValidationError({field: "must be a boolean."})


def _normalize_allow_list(value: Any) -> tuple[str, ...] | None:
    # Anything that is not a list ("all", null) means no restriction.
    if not isinstance(value, (list, tuple)):
        return None
    return tuple(str(item).strip() for item in value if str(item).strip())


def _lookup(raw: dict, camel: str, snake: str) -> Any:
    if camel in raw:
        return raw[camel]
    return raw.get(snake)


def normalize_filters(raw: Any) -> ProductFilters:
    """Fill a partially-specified filter with defaults."""
    if raw is None:
        return DEFAULT_FILTERS
    if isinstance(raw, ProductFilters):
        return raw
    if not isinstance(raw, dict):
        raise FilterValidationError({"filters": "must be an object."})
    return ProductFilters(
        include_active=_normalize_flag(
            _lookup(raw, "includeActive", "include_active"),
            DEFAULT_FILTERS.include_active,
            "includeActive",
        ),
        include_inactive=_normalize_flag(
            _lookup(raw, "includeInactive", "include_inactive"),
            DEFAULT_FILTERS.include_inactive,
            "includeInactive",
        ),
        category_ids=_normalize_allow_list(_lookup(raw, "categoryIds", "category_ids")),
        brand_ids=_normalize_allow_list(_lookup(raw, "brandIds", "brand_ids")),
    )


def excludes_all(filters: ProductFilters) -> bool:
    if not filters.include_active and not filters.include_inactive:
        return True
    if filters.category_ids is not None and len(filters.category_ids) == 0:
        return True
    if filters.brand_ids is not None and len(filters.brand_ids) == 0:
        return True
    return False


def validate_filters(raw: Any) -> ProductFilters:
    """Normalize ``raw`` and reject it when it can never match an item."""
    filters = normalize_filters(raw)
    if excludes_all(filters):
        raise FilterValidationError(
            "Filters exclude all products: enable active or inactive products and "
            "leave category/brand lists unset or non-empty."
        )
    return filters
