from datetime import datetime, timezone

import pytest

from kiotviet_sync.errors import AuthenticationError, FetchError
from kiotviet_sync.models import EntityKind

from conftest import make_products


def ids(outcome):
    return [r["id"] for r in outcome.records]


@pytest.fixture
def catalog_with_categories(provider):
    provider.categories = [
        {"categoryId": 1, "categoryName": "Lamps"},
        {"categoryId": 2, "categoryName": "Decor"},
        {"categoryId": 3, "categoryName": "Desk lamps", "parentId": 1},
    ]
    provider.products = [
        {"id": 10, "code": "A", "name": "Shared", "categoryIds": [1, 2]},
        {"id": 11, "code": "B", "name": "Lamp only", "categoryIds": [1]},
        {"id": 12, "code": "C", "name": "Decor only", "categoryIds": [2]},
        {"id": 13, "code": "D", "name": "Desk lamp", "categoryIds": [3]},
        {"id": 14, "code": "E", "name": "Unfiltered", "categoryIds": [9]},
    ]
    return provider


async def test_pagination_fetches_every_page_once(settings, build_fetcher, provider, clock):
    provider.products = make_products(250)
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    offsets = [int(r.url.params["currentItem"]) for r in provider.catalog_requests("/products")]
    assert offsets == [0, 100, 200]
    assert len(set(ids(outcome))) == 250
    assert outcome.reported_total == 250
    assert outcome.pages_requested == 3
    assert [b.items_fetched for b in outcome.batches] == [100, 100, 50]
    assert clock.sleeps == [0.1, 0.1]


async def test_page_query_parameters(settings, build_fetcher, provider):
    fetcher = build_fetcher(settings)
    since = datetime(2026, 1, 1, tzinfo=timezone.utc)

    await fetcher.fetch_page(EntityKind.PRODUCT, 200, 50, modified_since=since, category_id=7)

    params = provider.catalog_requests("/products")[0].url.params
    assert params["currentItem"] == "200"
    assert params["pageSize"] == "50"
    assert params["categoryId"] == "7"
    assert params["lastModifiedFrom"] == since.isoformat()
    assert params["includeRemoveIds"] == "true"
    assert params["includeInventory"] == "false"


async def test_removed_ids_are_reported(settings, build_fetcher, provider):
    provider.products = make_products(3)
    provider.removed_ids = [501, 502]
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert outcome.removed_ids == [501, 502]


async def test_failing_page_is_recorded_and_fetch_continues(settings, build_fetcher, provider):
    provider.products = make_products(250)
    provider.fail_pages[("/products", 100)] = 500
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert len(outcome.records) == 150
    assert len(outcome.errors) == 1
    error = outcome.errors[0]
    assert isinstance(error, FetchError)
    assert error.offset == 100
    assert error.to_dict()["id"] == "product@100"


async def test_consecutive_page_failures_stop_the_loop(settings, build_fetcher, provider):
    provider.products = make_products(1000)
    for offset in (0, 100, 200):
        provider.fail_pages[("/products", offset)] = 500
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert outcome.records == []
    assert len(outcome.errors) == 3
    assert outcome.pages_requested == 3


async def test_consecutive_empty_pages_stop_the_loop(settings, build_fetcher, provider):
    provider.total_override["/products"] = 1000
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert outcome.pages_requested == 3
    assert outcome.records == []
    assert outcome.errors == []


async def test_page_cap_bounds_the_loop(settings, build_fetcher, provider):
    provider.products = make_products(250)
    fetcher = build_fetcher(settings.model_copy(update={"max_pages": 2}))

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert len(outcome.records) == 200
    assert outcome.pages_requested == 2


async def test_category_filter_deduplicates_across_categories(settings, build_fetcher, catalog_with_categories):
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT, category_names=["lamps", "DECOR"])

    assert sorted(ids(outcome)) == [10, 11, 12, 13]
    assert ids(outcome).count(10) == 1
    assert outcome.category_ids == [1, 2, 3]
    assert outcome.category_overlaps == 1
    assert outcome.filtered


async def test_category_ids_expand_to_descendants(settings, build_fetcher, catalog_with_categories):
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT, category_ids=[1])

    requested = [r.url.params["categoryId"] for r in catalog_with_categories.catalog_requests("/products")]
    assert requested == ["1", "3"]
    assert sorted(ids(outcome)) == [10, 11, 13]


async def test_concurrent_categories_give_the_same_result(settings, build_fetcher, catalog_with_categories):
    fetcher = build_fetcher(settings.model_copy(update={"category_concurrency": 3}))

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT, category_names=["Lamps", "Decor"])

    assert sorted(ids(outcome)) == [10, 11, 12, 13]
    assert fetcher.client.governor.stats()["requests_in_window"] == 5


async def test_unknown_category_names_fetch_nothing(settings, build_fetcher, catalog_with_categories):
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT, category_names=["Nope"])

    assert outcome.records == []
    assert len(outcome.errors) == 1
    assert catalog_with_categories.catalog_requests("/products") == []


async def test_repeated_ids_in_one_listing_are_kept_for_validation(settings, build_fetcher, provider):
    provider.products = make_products(3) + make_products(1)
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert ids(outcome) == [1, 2, 3]
    assert [r["id"] for r in outcome.raw_records] == [1, 2, 3, 1]


async def test_authentication_failure_propagates(settings, build_fetcher, provider):
    provider.products = make_products(5)
    provider.token_status = 401
    fetcher = build_fetcher(settings)

    with pytest.raises(AuthenticationError):
        await fetcher.fetch_all(EntityKind.PRODUCT)


async def test_removed_ids_repeated_across_categories_are_reported_once(
    settings, build_fetcher, catalog_with_categories
):
    catalog_with_categories.removed_ids = [501, 502]
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT, category_names=["Lamps", "Decor"])

    assert len(catalog_with_categories.catalog_requests("/products")) == 3
    assert outcome.removed_ids == [501, 502]


async def test_non_object_records_are_kept_as_missing_id(settings, build_fetcher, provider):
    provider.products = make_products(2) + [None, "garbage"]
    fetcher = build_fetcher(settings)

    outcome = await fetcher.fetch_all(EntityKind.PRODUCT)

    assert outcome.records[:2] == provider.products[:2]
    assert outcome.records[2:] == [None, "garbage"]
