"""Base interfaces for the scrape pipeline.

Work units flowing between the stages, the rendering capability the
search crawl drives, and the per-site handler contracts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from price_tracker.db.models import PageEntry, PageKind, Store


@dataclass(frozen=True)
class QueueItem:
    """Product page discovered by the search crawl. Never persisted."""

    url: str
    store_id: int
    target_kind: PageKind
    handler: str
    ean: Optional[str] = None
    gtin: Optional[str] = None

    @classmethod
    def from_detail_page(cls, entry: PageEntry) -> "QueueItem":
        """Queue a configured product page directly, without rendering."""
        return cls(
            url=entry.url,
            store_id=entry.store_id,
            target_kind=PageKind.DETAIL,
            handler=entry.handler,
            ean=entry.ean,
            gtin=entry.gtin,
        )


@dataclass
class ProductDetail:
    """Product detail payload returned by a vendor API."""

    external_id: str
    name: str
    availability: bool
    manufacturer_name: str
    price: Decimal
    old_price: Optional[Decimal] = None
    discount_price: Optional[Decimal] = None


# ---------------------------------------------------------------------------
# Rendering capability
# ---------------------------------------------------------------------------


class ElementHandle(ABC):
    """Element found on a rendered page."""

    @abstractmethod
    async def attribute(self, name: str) -> Optional[str]:
        """Read an attribute, or None if it is not set."""
        pass


class PageHandle(ABC):
    """One rendered page (browser tab)."""

    @abstractmethod
    async def wait_for_selector(self, selector: str, timeout: float) -> None:
        """
        Wait until selector matches.

        Raises:
            PageTimeoutError: If nothing matched within timeout seconds
            RenderError: If the page died while waiting
        """
        pass

    @abstractmethod
    async def query_all(self, selector: str) -> list[ElementHandle]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class RenderSession(ABC):
    """Browser session that can open independent pages."""

    @abstractmethod
    async def open_page(self, url: str, timeout: float) -> PageHandle:
        """
        Open a new page and navigate it to url.

        Raises:
            PageTimeoutError: If navigation did not finish within timeout seconds
            RenderError: If the page could not be opened
        """
        pass

    @abstractmethod
    def is_alive(self) -> bool:
        """False once the underlying browser crashed or disconnected."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class Renderer(ABC):
    """Rendering engine. Started once per cycle, hands out sessions."""

    @abstractmethod
    async def start(self) -> None:
        """
        Start the engine.

        Raises:
            RenderError: If the engine is unavailable
        """
        pass

    @abstractmethod
    async def open_session(self) -> RenderSession:
        """
        Launch a new browser session.

        Raises:
            RenderError: If no session could be launched
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Site handlers
# ---------------------------------------------------------------------------


class SearchHandler(ABC):
    """Turns a rendered search listing into queue items."""

    name: str = "generic"
    kind: PageKind = PageKind.SEARCH

    @abstractmethod
    async def extract(
        self,
        page: PageHandle,
        entry: PageEntry,
        store: Store,
        selector_timeout: float,
    ) -> list[QueueItem]:
        pass


class DetailHandler(ABC):
    """Fetches and parses vendor detail data for one queue item."""

    name: str = "generic"
    kind: PageKind = PageKind.DETAIL

    @abstractmethod
    def extract_identifier(self, url: str) -> str:
        """
        Pull the vendor product id out of a product URL.

        Raises:
            ValidationError: If the URL does not carry an id
        """
        pass

    @abstractmethod
    def detail_url(self, identifier: str) -> str:
        pass

    @abstractmethod
    def parse_detail(self, payload: Any) -> ProductDetail:
        """
        Parse a decoded JSON payload.

        Raises:
            FetchError: If required fields are missing or malformed
        """
        pass
