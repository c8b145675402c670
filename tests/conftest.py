"""Shared fakes and fixtures for pipeline tests."""

import asyncio
from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from price_tracker.db.models import Base, PageEntry, PageKind, Product, ProductPrice, Store
from price_tracker.db.repository import CatalogRepository, ProductCreate
from price_tracker.errors import FetchError, PageTimeoutError, RenderError, StorageError, ValidationError
from price_tracker.ingest.base import ElementHandle, PageHandle, Renderer, RenderSession
from price_tracker.ingest.worker_pool import BoundedPool

STORE_URL = "https://www.kabum.com.br"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory stand-in for CatalogRepository with failure injection."""

    def __init__(self):
        self.stores: dict[int, Store] = {}
        self.pages: list[PageEntry] = []
        self.products: list[Product] = []
        self.prices: list[ProductPrice] = []
        self.fail_listing = False
        self.fail_detail_listing = False
        # Number of upcoming create_product_price calls that raise StorageError
        self.price_failures = 0
        self.create_delay = 0.0
        self.create_product_calls = 0

    def add_store(self, store_id: int = 1, url: str = STORE_URL, name: str = "KaBuM!") -> Store:
        store = Store(id=store_id, name=name, url=url, active=True)
        self.stores[store_id] = store
        return store

    def add_page(
        self,
        url: str,
        store_id: int = 1,
        kind: PageKind = PageKind.SEARCH,
        handler: str = "kabum",
        ean: Optional[str] = None,
        gtin: Optional[str] = None,
        active: bool = True,
    ) -> PageEntry:
        entry = PageEntry(
            id=len(self.pages) + 1,
            store_id=store_id,
            url=url,
            kind=kind,
            handler=handler,
            ean=ean,
            gtin=gtin,
            active=active,
        )
        self.pages.append(entry)
        return entry

    def add_product(self, name: str = "Existing", brand: str = "Acme", **fields) -> Product:
        product = Product(id=len(self.products) + 1, name=name, brand=brand, active=True, **fields)
        self.products.append(product)
        return product

    async def list_active_search_pages(self) -> list[PageEntry]:
        if self.fail_listing:
            raise StorageError("connection refused")
        return [p for p in self.pages if p.kind is PageKind.SEARCH and p.active]

    async def list_active_detail_pages(self) -> list[PageEntry]:
        if self.fail_detail_listing:
            raise StorageError("connection refused")
        return [p for p in self.pages if p.kind is PageKind.DETAIL and p.active]

    async def get_store(self, store_id: int) -> Optional[Store]:
        return self.stores.get(store_id)

    async def find_product_by_ean(self, ean: str) -> Optional[Product]:
        return self._find(lambda p: p.ean == ean)

    async def find_product_by_gtin(self, gtin: str) -> Optional[Product]:
        return self._find(lambda p: p.gtin == gtin)

    async def find_product_by_url(self, url: str) -> Optional[Product]:
        return self._find(lambda p: p.url == url)

    def _find(self, predicate) -> Optional[Product]:
        for product in self.products:
            if product.active and predicate(product):
                return product
        return None

    async def create_product(self, fields: ProductCreate) -> Product:
        self.create_product_calls += 1
        if not fields.name or not fields.brand:
            raise ValidationError("product name and brand are required")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        return self.add_product(
            name=fields.name,
            brand=fields.brand,
            url=fields.url,
            ean=fields.ean,
            gtin=fields.gtin,
        )

    async def create_product_price(self, product_id: int, store_id: int, price) -> ProductPrice:
        if self.price_failures > 0:
            self.price_failures -= 1
            raise StorageError("deadlock detected")
        amount = Decimal(str(price))
        if amount < 0:
            raise ValidationError("price cannot be negative")
        if not any(p.id == product_id for p in self.products):
            raise ValidationError(f"invalid product id {product_id}")
        if store_id not in self.stores:
            raise ValidationError(f"invalid store id {store_id}")
        row = ProductPrice(
            id=len(self.prices) + 1,
            product_id=product_id,
            store_id=store_id,
            price=amount,
        )
        self.prices.append(row)
        return row


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class FakeElement(ElementHandle):
    def __init__(self, attrs: dict[str, str]):
        self.attrs = attrs

    async def attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)


class FakePage(PageHandle):
    def __init__(self, renderer: "FakeRenderer", url: str):
        self.renderer = renderer
        self.url = url
        self.closed = False

    async def wait_for_selector(self, selector: str, timeout: float) -> None:
        if self.url in self.renderer.selector_timeouts:
            raise PageTimeoutError(f"selector {selector}", timeout)
        if self.renderer.render_delay:
            await asyncio.sleep(self.renderer.render_delay)

    async def query_all(self, selector: str) -> list[ElementHandle]:
        return [FakeElement({"href": href}) for href in self.renderer.listings.get(self.url, [])]

    async def close(self) -> None:
        self.closed = True
        self.renderer.active_pages -= 1


class FakeSession(RenderSession):
    def __init__(self, renderer: "FakeRenderer"):
        self.renderer = renderer
        self.alive = True
        self.closed = False

    async def open_page(self, url: str, timeout: float) -> PageHandle:
        if url in self.renderer.crash_on:
            # Kill the browser the first time this URL is visited
            self.renderer.crash_on.discard(url)
            self.alive = False
            raise RenderError(f"browser crashed while loading {url}")
        if url in self.renderer.broken_urls:
            raise RenderError(f"navigation to {url} failed")
        self.renderer.active_pages += 1
        self.renderer.peak_pages = max(self.renderer.peak_pages, self.renderer.active_pages)
        self.renderer.visited.append(url)
        return FakePage(self.renderer, url)

    def is_alive(self) -> bool:
        return self.alive and not self.closed

    async def close(self) -> None:
        self.closed = True


class FakeRenderer(Renderer):
    """Serves canned listings: url -> list of href values."""

    def __init__(self, listings: Optional[dict[str, list[str]]] = None):
        self.listings = listings or {}
        self.broken_urls: set[str] = set()
        self.selector_timeouts: set[str] = set()
        self.crash_on: set[str] = set()
        self.unavailable = False
        self.sessions_unavailable = False
        self.render_delay = 0.0
        self.started = False
        self.closed = False
        self.sessions: list[FakeSession] = []
        self.visited: list[str] = []
        self.active_pages = 0
        self.peak_pages = 0

    async def start(self) -> None:
        if self.unavailable:
            raise RenderError("chromium executable not found")
        self.started = True

    async def open_session(self) -> RenderSession:
        if self.sessions_unavailable:
            raise RenderError("browser failed to launch")
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Vendor API
# ---------------------------------------------------------------------------


def kabum_payload(code: int, name: str = None, price: Any = 199.9, brand: str = "Acme") -> dict:
    return {
        "codigo": code,
        "nome": name or f"Produto {code}",
        "disponibilidade": True,
        "fabricante": {"codigo": 7, "nome": brand},
        "preco": price,
        "preco_antigo": 249.9,
        "preco_desconto": 179.91,
    }


class FakeVendorClient:
    """Returns payloads keyed by product id (the last URL segment)."""

    def __init__(self, payloads: Optional[dict[str, Any]] = None):
        self.payloads = payloads or {}
        self.requested: list[str] = []
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def fetch_json(self, url: str) -> Any:
        self.requested.append(url)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            product_id = url.rstrip("/").rsplit("/", 1)[-1]
            if product_id not in self.payloads:
                raise FetchError(f"Vendor returned 404 for {url}", status_code=404)
            payload = self.payloads[product_id]
            if isinstance(payload, Exception):
                raise payload
            return payload
        finally:
            self.in_flight -= 1

    async def close(self):
        pass


class RecordingNotifier:
    """NotificationRelay stand-in that keeps published messages."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def start(self) -> None:
        pass

    def publish(self, message: str, channel: str = "scraper") -> None:
        self.messages.append((channel, message))

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def repository() -> FakeRepository:
    repo = FakeRepository()
    repo.add_store()
    return repo


@pytest.fixture
def search_pool() -> BoundedPool:
    return BoundedPool(2, name="test-search")


@pytest.fixture
def detail_pool() -> BoundedPool:
    return BoundedPool(10, name="test-detail")


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def sql_repository(session_factory) -> CatalogRepository:
    async with session_factory() as db:
        db.add(Store(id=1, name="KaBuM!", url=STORE_URL, active=True))
        await db.commit()
    return CatalogRepository(session_factory)
