"""Detail-fetch stage: vendor detail -> catalog product -> price observation."""

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from price_tracker import metrics
from price_tracker.config import settings
from price_tracker.db.models import PageKind, ProductPrice
from price_tracker.db.repository import CatalogRepository
from price_tracker.errors import ValidationError
from price_tracker.ingest.base import QueueItem
from price_tracker.ingest.catalog_resolver import CatalogResolver
from price_tracker.ingest.fetchers.vendor_api import VendorDetailClient
from price_tracker.ingest.handlers import HandlerRegistry
from price_tracker.ingest.retry import retry_async
from price_tracker.ingest.worker_pool import BoundedPool

logger = logging.getLogger(__name__)


class ItemState(str, enum.Enum):
    """Per-item lifecycle. PERSISTED and FAILED are terminal."""

    PENDING = "pending"
    FETCHING = "fetching"
    RESOLVED = "resolved"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class ItemResult:
    item: QueueItem
    state: ItemState
    product_id: Optional[int] = None
    price_id: Optional[int] = None
    product_created: bool = False
    error: Optional[str] = None


@dataclass
class DetailReport:
    """Outcome of the detail fetch for one cycle."""

    results: list[ItemResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def persisted(self) -> int:
        return sum(1 for r in self.results if r.state is ItemState.PERSISTED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.state is ItemState.FAILED)

    @property
    def products_created(self) -> int:
        return sum(1 for r in self.results if r.product_created)

    @property
    def failures(self) -> list[ItemResult]:
        return [r for r in self.results if r.state is ItemState.FAILED]


class DetailFetchStage:
    """
    Fetches vendor detail data for each queue item and appends a price row.

    Items are dispatched through the rate-limited detail pool. There is no
    retry of a failed item within a cycle: it is dropped and only comes back
    if the search crawl rediscovers its URL later.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        registry: HandlerRegistry,
        vendor_client: VendorDetailClient,
        pool: BoundedPool,
        resolver: Optional[CatalogResolver] = None,
        storage_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.vendor_client = vendor_client
        self.pool = pool
        self.storage_attempts = storage_attempts or settings.storage_max_attempts
        self.retry_base_delay = (
            settings.retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self.resolver = resolver or CatalogResolver(
            repository,
            storage_attempts=self.storage_attempts,
            retry_base_delay=self.retry_base_delay,
        )

    async def run(self, items: list[QueueItem]) -> DetailReport:
        """Process every item; returns once all of them reached a terminal state."""
        start = time.monotonic()
        logger.info(f"Fetching details for {len(items)} queued products")

        run = await self.pool.run(
            items,
            self._process_item,
            describe=lambda item: f"product {item.url}",
        )

        report = DetailReport()
        for outcome in run.outcomes:
            if outcome.ok:
                result = outcome.result
            else:
                result = ItemResult(
                    item=outcome.item,
                    state=ItemState.FAILED,
                    error=f"{type(outcome.error).__name__}: {outcome.error}",
                )
            report.results.append(result)
            metrics.record_item("detail", result.state.value)

        self.resolver.clear()
        report.duration_seconds = time.monotonic() - start
        logger.info(
            f"Detail fetch finished: {report.persisted} persisted, {report.failed} failed, "
            f"{report.products_created} new products in {report.duration_seconds:.1f}s"
        )
        return report

    async def _process_item(self, item: QueueItem) -> ItemResult:
        """
        Run one item to PERSISTED.

        Any exception leaves the item FAILED; the pool records and logs it.
        """
        state = ItemState.PENDING
        if item.target_kind is not PageKind.DETAIL:
            raise ValidationError(f"cannot fetch details for a {item.target_kind.value} item")

        handler = self.registry.detail(item.handler)
        identifier = handler.extract_identifier(item.url)

        state = self._transition(item, state, ItemState.FETCHING)
        payload = await self.vendor_client.fetch_json(handler.detail_url(identifier))
        detail = handler.parse_detail(payload)

        resolution = await self.resolver.resolve(item, detail)
        state = self._transition(item, state, ItemState.RESOLVED)

        price_row: ProductPrice = await retry_async(
            lambda: self.repository.create_product_price(
                resolution.product.id, item.store_id, detail.price
            ),
            attempts=self.storage_attempts,
            base_delay=self.retry_base_delay,
            description=f"append price for product {resolution.product.id}",
        )
        metrics.record_price_observation(item.store_id)
        state = self._transition(item, state, ItemState.PERSISTED)

        return ItemResult(
            item=item,
            state=state,
            product_id=resolution.product.id,
            price_id=price_row.id,
            product_created=resolution.created,
        )

    @staticmethod
    def _transition(item: QueueItem, current: ItemState, new: ItemState) -> ItemState:
        logger.debug(f"{item.url}: {current.value} -> {new.value} at {datetime.utcnow().isoformat()}")
        return new
