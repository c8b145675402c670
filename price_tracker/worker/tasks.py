"""Scrape cycle runner invoked by the scheduler."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import uuid4

from price_tracker import metrics
from price_tracker.config import settings
from price_tracker.db.repository import CatalogRepository
from price_tracker.db.session import AsyncSessionLocal
from price_tracker.errors import RenderError
from price_tracker.ingest.base import Renderer
from price_tracker.ingest.detail_fetch import DetailFetchStage, DetailReport
from price_tracker.ingest.fetchers.headless import PlaywrightRenderer
from price_tracker.ingest.fetchers.vendor_api import VendorDetailClient
from price_tracker.ingest.handlers import HandlerRegistry, default_registry
from price_tracker.ingest.search_crawl import CrawlReport, SearchCrawlStage
from price_tracker.ingest.worker_pool import BoundedPool
from price_tracker.logging_config import current_run_id, get_logger
from price_tracker.notify.discord import NotificationRelay, format_cycle_summary

logger = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    """What one completed cycle did."""

    run_id: str
    search_pages: int = 0
    search_pages_failed: int = 0
    queued_items: int = 0
    direct_items: int = 0
    persisted: int = 0
    failed: int = 0
    products_created: int = 0
    search_peak_in_flight: int = 0
    detail_peak_in_flight: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failed or self.search_pages_failed:
            return "partial"
        return "completed"


class ScrapeRunner:
    """
    Runs scrape cycles: search crawl, then detail fetch.

    The runner owns both worker pools and hands them to the stages on every
    cycle. Nothing is carried between cycles except those pools and the
    long-lived HTTP clients.
    """

    def __init__(
        self,
        repository: Optional[CatalogRepository] = None,
        vendor_client: Optional[VendorDetailClient] = None,
        renderer_factory: Callable[[], Renderer] = PlaywrightRenderer,
        registry: Optional[HandlerRegistry] = None,
        notifier: Optional[NotificationRelay] = None,
        search_pool: Optional[BoundedPool] = None,
        detail_pool: Optional[BoundedPool] = None,
    ):
        self.repository = repository or CatalogRepository(AsyncSessionLocal)
        self.vendor_client = vendor_client or VendorDetailClient()
        self.renderer_factory = renderer_factory
        self.registry = registry or default_registry()
        self.notifier = notifier or NotificationRelay()

        self.search_pool = search_pool or BoundedPool(
            settings.search_pool_size,
            name="search",
            unit_timeout=settings.search_item_timeout_seconds,
        )
        self.detail_pool = detail_pool or BoundedPool(
            settings.detail_pool_size,
            name="detail",
            dispatch_interval=settings.detail_dispatch_interval_ms / 1000,
            unit_timeout=settings.detail_item_timeout_seconds,
        )

        self.search_stage = SearchCrawlStage(self.repository, self.registry, self.search_pool)
        self.detail_stage = DetailFetchStage(
            self.repository,
            self.registry,
            self.vendor_client,
            self.detail_pool,
        )

    async def initialize(self):
        """Initialize runner resources."""
        self.notifier.start()
        logger.info(
            f"Scrape runner initialized (sites: {', '.join(self.registry.list_sites())}, "
            f"search pool {self.search_pool.size}, detail pool {self.detail_pool.size})"
        )

    async def close(self):
        """Clean up resources."""
        await self.vendor_client.close()
        await self.notifier.close()

    async def run_cycle(self) -> Optional[CycleSummary]:
        """
        Run one full cycle. Called by APScheduler.

        Never raises: cycle-level failures are logged and the next tick
        simply starts over.

        Returns:
            CycleSummary, or None if the cycle was aborted or skipped
        """
        run_id = uuid4().hex
        # Tasks spawned by the stages copy this context, so their records carry the id too
        token = current_run_id.set(run_id)
        try:
            return await self._run_cycle(run_id)
        finally:
            current_run_id.reset(token)

    async def _run_cycle(self, run_id: str) -> Optional[CycleSummary]:
        log = get_logger(__name__, run_id=run_id)
        start = time.monotonic()
        log.info(f"Starting scrape cycle {run_id}")

        self.search_pool.reset_stats()
        self.detail_pool.reset_stats()

        try:
            crawl = await self._crawl(log)
            if crawl is None:
                metrics.record_cycle("aborted", time.monotonic() - start)
                return None

            if crawl.skipped:
                log.warning(f"Cycle {run_id} skipped: {'; '.join(crawl.errors)}")
                metrics.record_cycle("skipped", time.monotonic() - start)
                return None

            direct = await self.search_stage.collect_detail_pages()
            crawl.direct_items = len(direct)
            items = crawl.items + direct

            details = await self.detail_stage.run(items)

            summary = self._summarize(run_id, crawl, details, time.monotonic() - start)
            metrics.record_cycle(summary.status, summary.duration_seconds)
            log.info(
                f"Cycle {run_id} {summary.status}: {summary.persisted}/{summary.queued_items} "
                f"prices recorded, {summary.products_created} new products, "
                f"{summary.failed} failed items in {summary.duration_seconds:.1f}s"
            )
            self._notify_summary(summary, details)
            return summary

        except Exception as e:
            log.exception(f"Scrape cycle {run_id} failed: {e}")
            metrics.record_cycle("failed", time.monotonic() - start)
            self.notifier.publish(f"Price scrape `{run_id[:8]}` failed: {e}")
            return None

    async def _crawl(self, log: logging.LoggerAdapter) -> Optional[CrawlReport]:
        """
        Run the search stage inside one renderer lifetime.

        Returns:
            CrawlReport, or None if no rendering session could be acquired
        """
        renderer = self.renderer_factory()
        try:
            await renderer.start()
            return await self.search_stage.run(renderer)
        except RenderError as e:
            log.error(f"Rendering engine unavailable, aborting cycle: {e}")
            self.notifier.publish(f"Price scrape aborted: rendering engine unavailable ({e})")
            return None
        finally:
            await renderer.close()

    def _summarize(
        self,
        run_id: str,
        crawl: CrawlReport,
        details: DetailReport,
        duration: float,
    ) -> CycleSummary:
        return CycleSummary(
            run_id=run_id,
            search_pages=crawl.entries_total,
            search_pages_failed=crawl.entries_failed,
            queued_items=len(details.results),
            direct_items=crawl.direct_items,
            persisted=details.persisted,
            failed=details.failed,
            products_created=details.products_created,
            search_peak_in_flight=self.search_pool.peak_in_flight,
            detail_peak_in_flight=self.detail_pool.peak_in_flight,
            duration_seconds=duration,
            errors=crawl.errors + [f"{r.item.url}: {r.error}" for r in details.failures],
        )

    def _notify_summary(self, summary: CycleSummary, details: DetailReport) -> None:
        self.notifier.publish(
            format_cycle_summary(
                run_id=summary.run_id,
                search_pages=summary.search_pages,
                search_failed=summary.search_pages_failed,
                queued=summary.queued_items,
                persisted=summary.persisted,
                failed=summary.failed,
                products_created=summary.products_created,
                duration_seconds=summary.duration_seconds,
            )
        )
        if settings.notify_on_item_failure:
            for result in details.failures:
                self.notifier.publish(
                    f"Failed to record price for {result.item.url}: {result.error}",
                    channel="scraper-errors",
                )
