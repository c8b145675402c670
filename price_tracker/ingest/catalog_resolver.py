"""Match scraped products against the catalog, creating them on first sighting."""

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Optional

from price_tracker import metrics
from price_tracker.config import settings
from price_tracker.db.models import Product
from price_tracker.db.repository import CatalogRepository, ProductCreate
from price_tracker.ingest.base import ProductDetail, QueueItem
from price_tracker.ingest.retry import retry_async

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    product: Product
    created: bool
    matched_by: Optional[str] = None  # "ean", "gtin", "url" or None when created


class CatalogResolver:
    """
    Lookup-or-create over the product catalog.

    Lookup precedence is EAN, then GTIN, then exact URL; the first hit is
    returned untouched (scraped attributes are never merged into an existing
    product). Lookup-or-create holds a lock for every identifier the item
    carries, so concurrent items sharing an EAN, a GTIN or a URL resolve to
    a single product even when only some of them carry the stronger hints.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        storage_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self.repository = repository
        self.storage_attempts = storage_attempts or settings.storage_max_attempts
        self.retry_base_delay = (
            settings.retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self._key_locks: dict[str, asyncio.Lock] = {}

    async def find(self, item: QueueItem) -> Optional[tuple[Product, str]]:
        """
        Look the item up without creating anything.

        Returns:
            (product, matched_by) or None
        """
        lookups = (
            ("ean", item.ean, self.repository.find_product_by_ean),
            ("gtin", item.gtin, self.repository.find_product_by_gtin),
            ("url", item.url, self.repository.find_product_by_url),
        )
        for field_name, value, lookup in lookups:
            if not value:
                continue
            product = await self._with_retry(
                lambda: lookup(value), f"lookup {field_name}={value}"
            )
            if product is not None:
                return product, field_name
        return None

    async def resolve(self, item: QueueItem, detail: ProductDetail) -> Resolution:
        """Return the matching product, creating it from the detail payload if unknown."""
        async with AsyncExitStack() as stack:
            for lock in self._locks_for(item):
                await stack.enter_async_context(lock)

            found = await self.find(item)
            if found is not None:
                product, matched_by = found
                logger.debug(f"Matched {item.url} to product {product.id} by {matched_by}")
                return Resolution(product=product, created=False, matched_by=matched_by)

            fields = ProductCreate(
                name=detail.name,
                brand=detail.manufacturer_name,
                url=item.url,
                ean=item.ean,
                # GTIN is only ever what the page entry configured; never derived from the EAN
                gtin=item.gtin,
            )
            product = await self._with_retry(
                lambda: self.repository.create_product(fields), f"create product for {item.url}"
            )
            metrics.products_created_total.inc()
            return Resolution(product=product, created=True)

    def _locks_for(self, item: QueueItem) -> list[asyncio.Lock]:
        # Sorted so two items sharing several keys always acquire them in the same order
        locks = []
        for key in sorted(_identity_keys(item)):
            lock = self._key_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[key] = lock
            locks.append(lock)
        return locks

    async def _with_retry(self, operation, description: str):
        return await retry_async(
            operation,
            attempts=self.storage_attempts,
            base_delay=self.retry_base_delay,
            description=description,
        )

    def clear(self) -> None:
        """Drop per-key locks; called between cycles."""
        self._key_locks = {
            key: lock for key, lock in self._key_locks.items() if lock.locked()
        }


def _identity_keys(item: QueueItem) -> set[str]:
    keys = {f"url:{item.url}"}
    if item.ean:
        keys.add(f"ean:{item.ean}")
    if item.gtin:
        keys.add(f"gtin:{item.gtin}")
    return keys
