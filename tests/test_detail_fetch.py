"""Tests for the detail-fetch stage and the KaBuM! product handler."""

from decimal import Decimal

import pytest

from price_tracker.db.models import PageKind
from price_tracker.errors import FetchError, ValidationError
from price_tracker.ingest.base import QueueItem
from price_tracker.ingest.detail_fetch import DetailFetchStage, ItemState
from price_tracker.ingest.handlers import HandlerRegistry, UnknownHandlerError, default_registry
from price_tracker.ingest.handlers.kabum import KABUM_API_URL, KabumProductHandler
from price_tracker.ingest.worker_pool import BoundedPool

from conftest import STORE_URL, FakeVendorClient, kabum_payload


def item(path: str, **kwargs) -> QueueItem:
    fields = dict(url=f"{STORE_URL}{path}", store_id=1, target_kind=PageKind.DETAIL, handler="kabum")
    fields.update(kwargs)
    return QueueItem(**fields)


def make_stage(repository, vendor, pool=None) -> DetailFetchStage:
    return DetailFetchStage(
        repository,
        default_registry(),
        vendor,
        pool or BoundedPool(10, name="detail"),
        storage_attempts=3,
        retry_base_delay=0,
    )


class TestKabumProductHandler:
    def setup_method(self):
        self.handler = KabumProductHandler()

    def test_identifier_is_third_path_segment(self):
        assert self.handler.extract_identifier(f"{STORE_URL}/produto/12345/slug") == "12345"

    def test_identifier_without_slug(self):
        assert self.handler.extract_identifier(f"{STORE_URL}/produto/98765") == "98765"

    @pytest.mark.parametrize("url", [f"{STORE_URL}/produto", f"{STORE_URL}/produto/", STORE_URL])
    def test_missing_segment_raises(self, url):
        with pytest.raises(ValidationError):
            self.handler.extract_identifier(url)

    def test_detail_url(self):
        assert self.handler.detail_url("100") == f"{KABUM_API_URL}100"

    def test_parse_detail(self):
        detail = self.handler.parse_detail(kabum_payload(100, name="SSD 1TB", price=399.9))

        assert detail.external_id == "100"
        assert detail.name == "SSD 1TB"
        assert detail.manufacturer_name == "Acme"
        assert detail.price == Decimal("399.9")
        assert detail.old_price == Decimal("249.9")
        assert detail.discount_price == Decimal("179.91")
        assert detail.availability is True

    def test_parse_detail_missing_price(self):
        payload = kabum_payload(100)
        del payload["preco"]
        with pytest.raises(FetchError):
            self.handler.parse_detail(payload)

    def test_parse_detail_rejects_non_object(self):
        with pytest.raises(FetchError):
            self.handler.parse_detail(["not", "a", "product"])


@pytest.mark.asyncio
async def test_items_are_persisted(repository):
    vendor = FakeVendorClient({"100": kabum_payload(100), "200": kabum_payload(200)})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto/100/a"), item("/produto/200/b")])

    assert report.persisted == 2
    assert report.failed == 0
    assert report.products_created == 2
    assert {r.state for r in report.results} == {ItemState.PERSISTED}
    assert len(repository.prices) == 2
    assert sorted(vendor.requested) == [f"{KABUM_API_URL}100", f"{KABUM_API_URL}200"]


@pytest.mark.asyncio
async def test_malformed_url_fails_only_that_item(repository):
    vendor = FakeVendorClient({"100": kabum_payload(100)})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto"), item("/produto/100/a")])

    states = {r.item.url: r.state for r in report.results}
    assert states[f"{STORE_URL}/produto"] is ItemState.FAILED
    assert states[f"{STORE_URL}/produto/100/a"] is ItemState.PERSISTED
    assert "malformed product url" in report.failures[0].error
    assert len(repository.prices) == 1


@pytest.mark.asyncio
async def test_fetch_failure_is_not_retried(repository):
    vendor = FakeVendorClient({"200": kabum_payload(200)})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto/100/a"), item("/produto/200/b")])

    assert report.failed == 1
    assert report.persisted == 1
    assert vendor.requested.count(f"{KABUM_API_URL}100") == 1
    assert not any(p.url.endswith("/produto/100/a") for p in repository.products)


@pytest.mark.asyncio
async def test_negative_price_fails_item_without_row(repository):
    vendor = FakeVendorClient({"100": kabum_payload(100, price=-1.0)})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto/100/a")])

    assert report.failed == 1
    assert repository.prices == []


@pytest.mark.asyncio
async def test_transient_storage_failure_is_retried(repository):
    repository.price_failures = 2
    vendor = FakeVendorClient({"100": kabum_payload(100)})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto/100/a")])

    assert report.persisted == 1
    assert len(repository.prices) == 1


@pytest.mark.asyncio
async def test_existing_product_is_reused(repository):
    existing = repository.add_product(name="Catalog name", ean="789")
    vendor = FakeVendorClient({"100": kabum_payload(100, name="Scraped name")})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto/100/a", ean="789")])

    assert report.results[0].product_id == existing.id
    assert report.products_created == 0
    assert existing.name == "Catalog name"
    assert repository.prices[0].product_id == existing.id


@pytest.mark.asyncio
async def test_search_kind_item_is_rejected(repository):
    vendor = FakeVendorClient({"100": kabum_payload(100)})
    stage = make_stage(repository, vendor)

    report = await stage.run([item("/produto/100/a", target_kind=PageKind.SEARCH)])

    assert report.failed == 1
    assert vendor.requested == []


@pytest.mark.asyncio
async def test_fetch_concurrency_bounded(repository):
    payloads = {str(n): kabum_payload(n) for n in range(1, 13)}
    vendor = FakeVendorClient(payloads)
    vendor.delay = 0.01
    stage = make_stage(repository, vendor, pool=BoundedPool(3, name="detail"))

    report = await stage.run([item(f"/produto/{n}/x") for n in range(1, 13)])

    assert report.persisted == 12
    assert vendor.peak_in_flight <= 3


class TestHandlerRegistry:
    def test_dispatch_by_kind(self):
        registry = default_registry()

        assert registry.for_kind(PageKind.SEARCH, "kabum").kind is PageKind.SEARCH
        assert registry.for_kind(PageKind.DETAIL, "kabum").kind is PageKind.DETAIL
        assert registry.list_sites() == ["kabum"]

    def test_unknown_site(self):
        with pytest.raises(UnknownHandlerError):
            default_registry().detail("nope")

    def test_register_rejects_non_handlers(self):
        with pytest.raises(TypeError):
            HandlerRegistry().register(object())
