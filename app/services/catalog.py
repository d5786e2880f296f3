"""
Product Catalog - Internal products and their external (Stripe) product mapping.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Product
from app.exceptions import DataIntegrityError, ResourceNotFoundError
from app.models.domain import ProductData
from app.services.scope_resolver import CatalogMapping

logger = get_logger(__name__)


def _to_product_data(product: Product) -> ProductData:
    return ProductData(
        product_id=product.id,
        title=product.title,
        external_product_id=product.stripe_product_id,
        requires_access=product.requires_access,
        allow_multiple=product.allow_multiple,
        url=product.url,
    )


class ProductCatalog:
    """Catalog reads plus the gating write that maps an external product id."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def snapshot(self) -> CatalogMapping:
        """Immutable mapping used for one whole reconciliation pass."""
        result = await self.session.execute(select(Product).order_by(Product.id))
        return CatalogMapping.from_products(_to_product_data(p) for p in result.scalars().all())

    async def get_product(self, product_id: int) -> ProductData | None:
        product = await self.session.get(Product, product_id)
        return _to_product_data(product) if product is not None else None

    async def resolve_external_product_id(self, external_product_id: str) -> int | None:
        result = await self.session.execute(
            select(Product.id).where(Product.stripe_product_id == external_product_id)
        )
        return result.scalar_one_or_none()

    async def gate_product(
        self,
        product_id: int,
        external_product_id: str,
        requires_access: bool | None = None,
        dry_run: bool = False,
    ) -> ProductData:
        """
        Map a catalog product to an external product id.

        Raises:
            ResourceNotFoundError: product does not exist
            DataIntegrityError: the external id already belongs to another product,
                or the product is already mapped to a different external id
        """
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ResourceNotFoundError("Product", str(product_id))

        owner = await self.resolve_external_product_id(external_product_id)
        if owner is not None and owner != product_id:
            raise DataIntegrityError(
                f"Stripe product {external_product_id} is already mapped to product {owner}"
            )
        if product.stripe_product_id and product.stripe_product_id != external_product_id:
            raise DataIntegrityError(
                f"Product {product_id} is already mapped to {product.stripe_product_id}"
            )

        if dry_run:
            return ProductData(
                product_id=product.id,
                title=product.title,
                external_product_id=external_product_id,
                requires_access=product.requires_access if requires_access is None else requires_access,
                allow_multiple=product.allow_multiple,
                url=product.url,
            )

        product.stripe_product_id = external_product_id
        if requires_access is not None:
            product.requires_access = requires_access
        await self.session.flush()

        logger.info(
            "product_gated",
            product_id=product_id,
            stripe_product_id=external_product_id,
            requires_access=product.requires_access,
        )
        return _to_product_data(product)
