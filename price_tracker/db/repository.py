"""Persistence gateway used by the scrape pipeline.

Every operation opens its own session and commits on its own; the pipeline
never spans a transaction across rows. SQLAlchemy failures are translated
into ``StorageError`` / ``ValidationError`` so callers only deal with the
pipeline's error taxonomy.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker.db.models import PageEntry, PageKind, Product, ProductPrice, Store
from price_tracker.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ProductCreate:
    """Fields for a new catalog product."""

    name: str
    brand: str
    url: Optional[str] = None
    ean: Optional[str] = None
    gtin: Optional[str] = None


class CatalogRepository:
    """Typed read/write operations over stores, pages, products and prices."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active_search_pages(self) -> list[PageEntry]:
        """All active pages of kind SEARCH."""
        return await self._list_pages(PageKind.SEARCH)

    async def list_active_detail_pages(self) -> list[PageEntry]:
        """All active pages of kind DETAIL."""
        return await self._list_pages(PageKind.DETAIL)

    async def _list_pages(self, kind: PageKind) -> list[PageEntry]:
        query = (
            select(PageEntry)
            .where(PageEntry.kind == kind, PageEntry.active.is_(True))
            .order_by(PageEntry.id)
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list {kind.value} pages: {e}") from e

    async def get_store(self, store_id: int) -> Optional[Store]:
        try:
            async with self._session_factory() as db:
                return await db.get(Store, store_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load store {store_id}: {e}") from e

    async def find_product_by_ean(self, ean: str) -> Optional[Product]:
        return await self._find_product(Product.ean == ean, f"ean={ean}")

    async def find_product_by_gtin(self, gtin: str) -> Optional[Product]:
        return await self._find_product(Product.gtin == gtin, f"gtin={gtin}")

    async def find_product_by_url(self, url: str) -> Optional[Product]:
        return await self._find_product(Product.url == url, f"url={url}")

    async def _find_product(self, condition, description: str) -> Optional[Product]:
        # Oldest row wins if the external CRUD surface ever created duplicates
        query = (
            select(Product)
            .where(condition, Product.active.is_(True))
            .order_by(Product.id)
            .limit(1)
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return result.scalars().first()
        except SQLAlchemyError as e:
            raise StorageError(f"Product lookup failed ({description}): {e}") from e

    async def create_product(self, fields: ProductCreate) -> Product:
        """
        Insert a new product.

        Raises:
            ValidationError: If name or brand is empty or a constraint fails
            StorageError: On transport failure
        """
        if not fields.name or not fields.name.strip():
            raise ValidationError("product name must not be empty")
        if not fields.brand or not fields.brand.strip():
            raise ValidationError("product brand must not be empty")

        product = Product(
            name=fields.name.strip(),
            brand=fields.brand.strip(),
            url=fields.url,
            ean=fields.ean,
            gtin=fields.gtin,
            active=True,
        )
        await self._insert(product, f"product {fields.name!r}")

        logger.info(f"Created product {product.id} ({product.name})")
        return product

    async def create_product_price(
        self,
        product_id: int,
        store_id: int,
        price: Union[Decimal, float, int, str],
    ) -> ProductPrice:
        """
        Append a price observation.

        Args:
            product_id: Existing product id
            store_id: Existing store id
            price: Non-negative price

        Returns:
            The persisted ProductPrice row

        Raises:
            ValidationError: If price is negative/not a number or an id does not resolve
            StorageError: On transport failure
        """
        amount = _to_decimal(price)
        if amount < 0:
            raise ValidationError(f"price cannot be negative (got {amount})")

        async def check_references(db: AsyncSession) -> None:
            if await db.get(Product, product_id) is None:
                raise ValidationError(f"invalid product id {product_id}")
            if await db.get(Store, store_id) is None:
                raise ValidationError(f"invalid store id {store_id}")

        row = ProductPrice(product_id=product_id, store_id=store_id, price=amount)
        await self._insert(row, f"price for product {product_id}", check_references)
        return row

    async def _insert(self, row, description: str, precheck=None) -> None:
        """
        Add and commit one row.

        Only failures up to and including the commit become ``StorageError``
        (retryable). Once the commit went through the row exists, and an error
        while closing the session must not make a caller insert it again. The
        primary key is assigned at flush and every default is Python-side, so
        the row is not reloaded.
        """
        committed = False
        try:
            async with self._session_factory() as db:
                if precheck is not None:
                    await precheck(db)
                db.add(row)
                await db.commit()
                committed = True
        except IntegrityError as e:
            raise ValidationError(f"{description} rejected by database: {e.orig}") from e
        except SQLAlchemyError as e:
            if not committed:
                raise StorageError(f"Failed to insert {description}: {e}") from e
            logger.warning(f"Inserted {description} (id {row.id}) but closing the session failed: {e}")

    async def list_product_prices(
        self,
        product_id: int,
        store_id: Optional[int] = None,
    ) -> list[ProductPrice]:
        """Price history of a product, oldest first."""
        query = select(ProductPrice).where(ProductPrice.product_id == product_id)
        if store_id is not None:
            query = query.where(ProductPrice.store_id == store_id)
        query = query.order_by(ProductPrice.observed_at, ProductPrice.id)
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list prices for product {product_id}: {e}") from e


def _to_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    """Convert a scraped price to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"price is not a number: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"price is not a finite number: {value!r}")
    return amount
