"""Search-crawl stage: render listing pages and collect product links."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from price_tracker import metrics
from price_tracker.config import settings
from price_tracker.db.models import PageEntry
from price_tracker.db.repository import CatalogRepository
from price_tracker.errors import StorageError, ValidationError
from price_tracker.ingest.base import QueueItem, Renderer
from price_tracker.ingest.fetchers.headless import SessionSupervisor
from price_tracker.ingest.handlers import HandlerRegistry
from price_tracker.ingest.worker_pool import BoundedPool

logger = logging.getLogger(__name__)


@dataclass
class CrawlReport:
    """Outcome of the search crawl for one cycle."""

    skipped: bool = False
    items: list[QueueItem] = field(default_factory=list)
    entries_total: int = 0
    entries_failed: int = 0
    direct_items: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @classmethod
    def skip(cls, reason: str) -> "CrawlReport":
        return cls(skipped=True, errors=[reason])


class SearchCrawlStage:
    """
    Turns active search pages into queue items.

    Each entry runs under a permit of the search pool. Entries are grouped
    into batches that share one supervised browser session, so a browser
    crash only affects its own batch. A failing entry contributes zero
    items and never affects the others.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        registry: HandlerRegistry,
        pool: BoundedPool,
        batch_size: Optional[int] = None,
        max_session_restarts: Optional[int] = None,
        navigation_timeout: Optional[float] = None,
        selector_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.pool = pool
        self.batch_size = max(1, batch_size or settings.render_batch_size)
        self.max_session_restarts = (
            settings.render_max_session_restarts
            if max_session_restarts is None
            else max_session_restarts
        )
        self.navigation_timeout = navigation_timeout or settings.navigation_timeout_seconds
        self.selector_timeout = selector_timeout or settings.selector_timeout_seconds

    async def run(self, renderer: Renderer) -> CrawlReport:
        """
        Crawl every active search page.

        Returns:
            CrawlReport; ``skipped`` is set when the page listing itself failed

        Raises:
            RenderError: If not even the first browser session could be launched
        """
        start = time.monotonic()

        try:
            entries = await self.repository.list_active_search_pages()
        except StorageError as e:
            logger.error(f"Failed to load search pages from database: {e}")
            return CrawlReport.skip(str(e))

        logger.info(f"Crawling {len(entries)} search pages")
        report = CrawlReport(entries_total=len(entries))
        if not entries:
            report.duration_seconds = time.monotonic() - start
            return report

        supervisors: dict[int, SessionSupervisor] = {}
        for index, entry in enumerate(entries):
            batch_no = index // self.batch_size
            if batch_no not in supervisors:
                supervisors[batch_no] = SessionSupervisor(
                    renderer,
                    max_restarts=self.max_session_restarts,
                    label=f"search-batch-{batch_no}",
                )

        async def crawl(indexed: tuple[int, PageEntry]) -> list[QueueItem]:
            index, entry = indexed
            return await self._crawl_entry(entry, supervisors[index // self.batch_size])

        try:
            # No browser at all means no crawl: let RenderError abort the cycle
            await supervisors[0].get()

            run = await self.pool.run(
                list(enumerate(entries)),
                crawl,
                describe=lambda indexed: f"search page {indexed[1].id} ({indexed[1].url})",
            )
        finally:
            await asyncio.gather(
                *(supervisor.close() for supervisor in supervisors.values()),
                return_exceptions=True,
            )

        for outcome in run.outcomes:
            if outcome.ok:
                report.items.extend(outcome.result)
                metrics.record_item("search", "success")
            else:
                report.entries_failed += 1
                report.errors.append(f"page {outcome.item[1].id}: {outcome.error}")
                metrics.record_item("search", "failed")

        report.duration_seconds = time.monotonic() - start
        logger.info(
            f"Search crawl finished: {len(report.items)} items from "
            f"{report.entries_total - report.entries_failed}/{report.entries_total} pages "
            f"in {report.duration_seconds:.1f}s"
        )
        return report

    async def _crawl_entry(
        self,
        entry: PageEntry,
        supervisor: SessionSupervisor,
    ) -> list[QueueItem]:
        handler = self.registry.search(entry.handler)

        store = await self.repository.get_store(entry.store_id)
        if store is None:
            raise ValidationError(f"page {entry.id} references missing store {entry.store_id}")

        session = await supervisor.get()
        page = await session.open_page(entry.url, timeout=self.navigation_timeout)
        try:
            return await handler.extract(page, entry, store, self.selector_timeout)
        finally:
            await page.close()

    async def collect_detail_pages(self) -> list[QueueItem]:
        """
        Queue configured product pages directly.

        A listing failure is logged and yields nothing; it never skips the cycle.
        """
        try:
            entries = await self.repository.list_active_detail_pages()
        except StorageError as e:
            logger.error(f"Failed to load detail pages from database: {e}")
            return []

        items = [QueueItem.from_detail_page(entry) for entry in entries]
        if items:
            logger.info(f"Queued {len(items)} configured product pages")
        return items
