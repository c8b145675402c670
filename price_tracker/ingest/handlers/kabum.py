"""KaBuM! storefront handlers.

Search listings are rendered client-side, so they go through the browser.
Product pages are skipped entirely in favour of the public description API,
which is keyed by the numeric id embedded in the product URL.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import urljoin, urlparse

from price_tracker.db.models import PageEntry, PageKind, Store
from price_tracker.errors import FetchError, ValidationError
from price_tracker.ingest.base import (
    DetailHandler,
    PageHandle,
    ProductDetail,
    QueueItem,
    SearchHandler,
)

logger = logging.getLogger(__name__)

KABUM_API_URL = "https://servicespub.prod.api.aws.grupokabum.com.br/descricao/v1/descricao/produto/"


class KabumSearchHandler(SearchHandler):
    """Collects product links from a KaBuM! search listing."""

    name = "kabum"

    LISTING_SELECTOR = ".productCard"
    LINK_SELECTOR = ".productCard .productLink"

    async def extract(
        self,
        page: PageHandle,
        entry: PageEntry,
        store: Store,
        selector_timeout: float,
    ) -> list[QueueItem]:
        await page.wait_for_selector(self.LISTING_SELECTOR, timeout=selector_timeout)
        links = await page.query_all(self.LINK_SELECTOR)

        items: list[QueueItem] = []
        seen: set[str] = set()
        for link in links:
            href = await link.attribute("href")
            if not href:
                continue

            # Listing links only carry the path; resolve against the store's domain
            url = urljoin(store.url, href.strip())
            if url in seen:
                continue
            seen.add(url)

            items.append(
                QueueItem(
                    url=url,
                    store_id=store.id,
                    target_kind=PageKind.DETAIL,
                    handler=self.name,
                    ean=entry.ean,
                    gtin=entry.gtin,
                )
            )

        logger.debug(f"Found {len(items)} product links on {entry.url}")
        return items


class KabumProductHandler(DetailHandler):
    """Resolves KaBuM! product URLs through the description API."""

    name = "kabum"

    def __init__(self, api_url: str = KABUM_API_URL):
        self.api_url = api_url

    def extract_identifier(self, url: str) -> str:
        # Product paths look like "/produto/<product_id>/<slug>"
        segments = urlparse(url).path.split("/")
        if len(segments) < 3 or not segments[2].strip():
            raise ValidationError(f"malformed product url {url}")
        return segments[2].strip()

    def detail_url(self, identifier: str) -> str:
        return f"{self.api_url}{identifier}"

    def parse_detail(self, payload: Any) -> ProductDetail:
        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected detail payload type {type(payload).__name__}")

        manufacturer = payload.get("fabricante")
        if not isinstance(manufacturer, dict):
            raise FetchError("Detail payload has no manufacturer")

        try:
            external_id = payload["codigo"]
            name = payload["nome"]
            manufacturer_name = manufacturer["nome"]
            price = _decimal(payload["preco"])
        except KeyError as e:
            raise FetchError(f"Detail payload missing field {e}") from e

        if price is None:
            raise FetchError("Detail payload has no price")
        if not name or not manufacturer_name:
            raise FetchError("Detail payload has an empty name or manufacturer")

        return ProductDetail(
            external_id=str(external_id),
            name=str(name),
            availability=bool(payload.get("disponibilidade", False)),
            manufacturer_name=str(manufacturer_name),
            price=price,
            old_price=_decimal(payload.get("preco_antigo")),
            discount_price=_decimal(payload.get("preco_desconto")),
        )


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise FetchError(f"Invalid price value {value!r}") from e
