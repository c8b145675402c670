"""Tests for catalog resolution (lookup-or-create)."""

import asyncio
from decimal import Decimal

import pytest

from price_tracker.db.models import PageKind
from price_tracker.ingest.base import ProductDetail, QueueItem
from price_tracker.ingest.catalog_resolver import CatalogResolver

from conftest import STORE_URL


def detail(name: str = "Placa de Vídeo", brand: str = "Acme") -> ProductDetail:
    return ProductDetail(
        external_id="100",
        name=name,
        availability=True,
        manufacturer_name=brand,
        price=Decimal("1999.90"),
    )


def item(url: str = f"{STORE_URL}/produto/100/a", ean=None, gtin=None) -> QueueItem:
    return QueueItem(
        url=url,
        store_id=1,
        target_kind=PageKind.DETAIL,
        handler="kabum",
        ean=ean,
        gtin=gtin,
    )


@pytest.fixture
def resolver(repository) -> CatalogResolver:
    return CatalogResolver(repository, storage_attempts=1, retry_base_delay=0)


@pytest.mark.asyncio
async def test_same_ean_resolves_to_same_product(resolver, repository):
    first = await resolver.resolve(item(ean="7891"), detail())
    second = await resolver.resolve(item(url=f"{STORE_URL}/produto/200/b", ean="7891"), detail())

    assert first.created is True
    assert second.created is False
    assert second.matched_by == "ean"
    assert first.product.id == second.product.id
    assert len(repository.products) == 1


@pytest.mark.asyncio
async def test_ean_takes_precedence_over_gtin_and_url(resolver, repository):
    by_url = repository.add_product(name="by url", url=f"{STORE_URL}/produto/100/a")
    by_gtin = repository.add_product(name="by gtin", gtin="0001")
    by_ean = repository.add_product(name="by ean", ean="7891")

    resolution = await resolver.resolve(item(ean="7891", gtin="0001"), detail())

    assert resolution.product is by_ean
    assert resolution.matched_by == "ean"

    resolution = await resolver.resolve(item(ean="unknown", gtin="0001"), detail())
    assert resolution.product is by_gtin
    assert resolution.matched_by == "gtin"

    resolution = await resolver.resolve(item(), detail())
    assert resolution.product is by_url
    assert resolution.matched_by == "url"


@pytest.mark.asyncio
async def test_match_does_not_merge_scraped_attributes(resolver, repository):
    existing = repository.add_product(name="Catalog name", brand="Catalog brand", ean="7891")

    resolution = await resolver.resolve(item(ean="7891"), detail(name="Other", brand="Other"))

    assert resolution.product is existing
    assert existing.name == "Catalog name"
    assert existing.brand == "Catalog brand"
    assert existing.url is None


@pytest.mark.asyncio
async def test_created_product_fields(resolver, repository):
    resolution = await resolver.resolve(item(ean="7891"), detail(name="SSD", brand="Kingston"))

    product = resolution.product
    assert product.name == "SSD"
    assert product.brand == "Kingston"
    assert product.url == f"{STORE_URL}/produto/100/a"
    assert product.ean == "7891"
    # GTIN is left empty rather than copied from the EAN
    assert product.gtin is None


@pytest.mark.asyncio
async def test_inactive_product_is_not_matched(resolver, repository):
    inactive = repository.add_product(ean="7891")
    inactive.active = False

    resolution = await resolver.resolve(item(ean="7891"), detail())

    assert resolution.created is True
    assert resolution.product is not inactive


@pytest.mark.asyncio
async def test_concurrent_items_with_same_ean_create_one_product(resolver, repository):
    repository.create_delay = 0.01
    items = [item(url=f"{STORE_URL}/produto/{n}/x", ean="7891") for n in range(5)]

    resolutions = await asyncio.gather(*(resolver.resolve(i, detail()) for i in items))

    assert repository.create_product_calls == 1
    assert len({r.product.id for r in resolutions}) == 1
    assert sum(r.created for r in resolutions) == 1


@pytest.mark.asyncio
async def test_find_without_identifiers_uses_url(resolver, repository):
    assert await resolver.find(item()) is None

    product = repository.add_product(url=f"{STORE_URL}/produto/100/a")
    assert await resolver.find(item()) == (product, "url")


@pytest.mark.asyncio
async def test_concurrent_mixed_hints_for_same_url_create_one_product(resolver, repository):
    repository.create_delay = 0.01
    url = f"{STORE_URL}/produto/100/a"
    items = [item(url=url, ean="7891"), item(url=url), item(url=url, gtin="0001")]

    resolutions = await asyncio.gather(*(resolver.resolve(i, detail()) for i in items))

    assert repository.create_product_calls == 1
    assert len(repository.products) == 1
    assert {r.product.id for r in resolutions} == {repository.products[0].id}


@pytest.mark.asyncio
async def test_items_sharing_several_keys_do_not_deadlock(resolver, repository):
    repository.create_delay = 0.01
    first = item(url=f"{STORE_URL}/produto/1/a", ean="7891", gtin="0001")
    second = item(url=f"{STORE_URL}/produto/2/b", ean="7891", gtin="0001")

    resolutions = await asyncio.wait_for(
        asyncio.gather(resolver.resolve(first, detail()), resolver.resolve(second, detail())),
        timeout=1,
    )

    assert repository.create_product_calls == 1
    assert resolutions[0].product.id == resolutions[1].product.id


@pytest.mark.asyncio
async def test_created_product_has_no_image(resolver, repository):
    resolution = await resolver.resolve(item(), detail())

    assert resolution.product.image is None
