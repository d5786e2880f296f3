"""
Scope Resolver - Maps external product references to stable scope keys.

Pure functions over an immutable catalog snapshot. One reconciliation pass
loads the snapshot once, so every scope key computed during that pass agrees.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from app.models.domain import (
    UNKNOWN_EXTERNAL_PRODUCT,
    LineItem,
    MappedScope,
    ProductData,
    ScopeKey,
    UnmappedScope,
)


@dataclass(frozen=True, eq=False)
class CatalogMapping:
    """Immutable snapshot of external product id -> internal product."""

    external_to_internal: Mapping[str, int] = field(default_factory=dict)
    products: Mapping[int, ProductData] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze the underlying mappings."""
        object.__setattr__(
            self, "external_to_internal", MappingProxyType(dict(self.external_to_internal))
        )
        object.__setattr__(self, "products", MappingProxyType(dict(self.products)))

    @classmethod
    def from_products(cls, products: Iterable[ProductData]) -> "CatalogMapping":
        """Build a snapshot from catalog rows; only rows with an external id are mapped."""
        by_id: dict[int, ProductData] = {}
        mapping: dict[str, int] = {}
        for product in products:
            by_id[product.product_id] = product
            if product.external_product_id:
                mapping[product.external_product_id] = product.product_id
        return cls(external_to_internal=mapping, products=by_id)

    def resolve(self, external_product_id: str | None) -> int | None:
        """Internal id for an external product id, or None when unmapped."""
        if not external_product_id:
            return None
        product_id = self.external_to_internal.get(external_product_id)
        if product_id is None or product_id <= 0:
            return None
        return product_id

    def product(self, product_id: int) -> ProductData | None:
        return self.products.get(product_id)


def scope_key_for_product(external_product_id: str | None, catalog: CatalogMapping) -> ScopeKey:
    """Scope key for a bare external product id."""
    product_id = catalog.resolve(external_product_id)
    if product_id is not None:
        return MappedScope(product_id)
    return UnmappedScope(external_product_id or UNKNOWN_EXTERNAL_PRODUCT)


def compute_scope_key(line_item: LineItem, catalog: CatalogMapping) -> ScopeKey:
    """Scope key for a purchased line item."""
    return scope_key_for_product(line_item.external_product_id, catalog)


def resolve_scope_keys(
    line_items: Iterable[LineItem], catalog: CatalogMapping
) -> tuple[ScopeKey, ...]:
    """Distinct scope keys of the line items, in line order."""
    keys: list[ScopeKey] = []
    for item in line_items:
        key = compute_scope_key(item, catalog)
        if key not in keys:
            keys.append(key)
    return tuple(keys)


def recurring_scope_keys(
    line_items: Iterable[LineItem], catalog: CatalogMapping
) -> frozenset[ScopeKey]:
    """Scope keys backed by at least one recurring price."""
    return frozenset(compute_scope_key(item, catalog) for item in line_items if item.is_recurring)


def mapped_product_ids(line_items: Iterable[LineItem], catalog: CatalogMapping) -> tuple[int, ...]:
    """Distinct internal product ids referenced by the line items."""
    ids: list[int] = []
    for key in resolve_scope_keys(line_items, catalog):
        if isinstance(key, MappedScope) and key.product_id not in ids:
            ids.append(key.product_id)
    return tuple(ids)
