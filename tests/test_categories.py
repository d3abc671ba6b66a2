import pytest

from kiotviet_sync.categories import CategoryResolver, build_forest, flatten, hierarchy_stats


def category(category_id, name, parent_id=None, **extra):
    return {"categoryId": category_id, "categoryName": name, "parentId": parent_id, **extra}


@pytest.fixture
def resolver(settings, build_client, clock):
    def build(**overrides):
        resolver_settings = settings.model_copy(update=overrides)
        return CategoryResolver(build_client(resolver_settings), resolver_settings, clock=clock.monotonic)

    return build


def test_flat_listing_is_linked_by_parent_pointers():
    roots, index = build_forest([
        category(1, "Drinks"),
        category(2, "Tea", 1),
        category(3, "Green tea", 2),
        category(4, "Snacks"),
    ])

    assert [r.id for r in roots] == [1, 4]
    assert [c.id for c in index[1].children] == [2]
    assert [c.id for c in index[2].children] == [3]


def test_nested_listing_is_normalised():
    roots, index = build_forest([
        category(1, "Drinks", children=[
            {"categoryId": 2, "categoryName": "Tea", "children": [{"categoryId": 3, "categoryName": "Green"}]},
        ]),
    ])

    assert [r.id for r in roots] == [1]
    assert index[3].parent_id == 2
    assert [n.id for n in flatten(roots)] == [1, 2, 3]


def test_hierarchy_stats_counts_roots_children_and_depth():
    roots, _ = build_forest([
        category(1, "A"),
        category(2, "B", 1),
        category(3, "C", 2),
        category(4, "D"),
    ])

    stats = hierarchy_stats(roots)

    assert stats.total_root_categories == 2
    assert stats.total_child_categories == 2
    assert stats.max_depth == 3


async def test_resolve_descendants_returns_roots_first(resolver, provider):
    provider.categories = [
        category(1, "Drinks"),
        category(2, "Tea", 1),
        category(3, "Coffee", 1),
        category(4, "Green tea", 2),
        category(5, "Snacks"),
    ]

    ids = await resolver().resolve_descendants([1])

    assert ids == [1, 2, 3, 4]


async def test_resolve_descendants_terminates_on_cycles(resolver, provider):
    provider.categories = [category(1, "A", 2), category(2, "B", 1)]

    ids = await resolver().resolve_descendants([1])

    assert ids == [1, 2]


async def test_resolve_descendants_respects_depth_cap(resolver, provider):
    provider.categories = [category(1, "L1")] + [category(i, f"L{i}", i - 1) for i in range(2, 16)]

    ids = await resolver(max_category_depth=3).resolve_descendants([1])

    assert ids == [1, 2, 3, 4]


async def test_resolve_descendants_falls_back_to_roots(resolver, provider):
    provider.fail_pages[("/categories", 0)] = 500

    ids = await resolver().resolve_descendants([7, 8, 7])

    assert ids == [7, 8]


async def test_unknown_root_is_kept(resolver, provider):
    provider.categories = [category(1, "A")]

    assert await resolver().resolve_descendants([99]) == [99]


async def test_resolve_names_is_case_insensitive(resolver, provider):
    provider.categories = [category(1, "Lamps"), category(2, "Home Decor")]

    ids = await resolver().resolve_names(["home decor", " LAMPS ", "missing"])

    assert ids == [2, 1]


async def test_fetches_are_cached_until_ttl(resolver, provider, clock):
    provider.categories = [category(1, "A")]
    cached = resolver()

    await cached.fetch_flat()
    await cached.fetch_flat()
    await cached.fetch_tree()
    await cached.fetch_tree()
    assert len(provider.catalog_requests("/categories")) == 2

    clock.advance(3600)
    await cached.fetch_flat()
    assert len(provider.catalog_requests("/categories")) == 3


async def test_clear_cache_forces_refetch(resolver, provider):
    provider.categories = [category(1, "A")]
    cached = resolver()

    await cached.fetch_flat()
    cached.clear_cache()
    await cached.fetch_flat()

    assert len(provider.catalog_requests("/categories")) == 2


async def test_hierarchical_fetch_requests_nested_data(resolver, provider):
    provider.category_tree = [category(1, "A", children=[category(2, "B")])]

    forest = await resolver().fetch_tree()

    request = provider.catalog_requests("/categories")[0]
    assert request.url.params["hierarchicalData"] == "true"
    assert [c.id for c in forest[0].children] == [2]


async def test_flat_fetch_pages_through_all_categories(resolver, provider):
    provider.categories = [category(i, f"C{i}") for i in range(1, 151)]

    mapping = await resolver().fetch_flat()

    assert len(mapping) == 150
    assert len(provider.catalog_requests("/categories")) == 2


def test_malformed_names_and_children_do_not_break_the_forest():
    roots, index = build_forest([
        category(1, 42, children="none"),
        category(2, None, 1),
        None,
    ])

    assert [r.id for r in roots] == [1]
    assert index[1].name == "42"
    assert index[2].name == ""
