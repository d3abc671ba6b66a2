"""
Category lookup and descendant resolution.

Upstream category data is not trusted to be acyclic: every walk uses an
explicit queue or stack with a visited set and a depth cap.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from kiotviet_sync.client import KiotVietClient
from kiotviet_sync.config import SyncSettings
from kiotviet_sync.errors import FATAL_ERRORS, SyncError
from kiotviet_sync.models import CategoryNode, EntityKind, ExternalId, HierarchyStats

logger = structlog.get_logger(__name__)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _name(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def build_forest(records: Iterable[Dict[str, Any]]) -> Tuple[List[CategoryNode], Dict[ExternalId, CategoryNode]]:
    """
    Normalise a flat (parentId) or nested (children) category listing.

    Returns the root nodes and an index of every node by id. Nodes whose
    parent is unknown are treated as roots.
    """
    index: Dict[ExternalId, CategoryNode] = {}
    order: List[ExternalId] = []

    stack: List[Tuple[Dict[str, Any], Optional[int]]] = [(r, None) for r in reversed(list(records))]
    while stack:
        record, container_id = stack.pop()
        if not isinstance(record, dict):
            continue
        node_id = _as_int(record.get("categoryId"))
        if node_id is None:
            continue
        parent_id = _as_int(record.get("parentId"))
        if parent_id is None:
            parent_id = container_id
        if node_id not in index:
            index[node_id] = CategoryNode(
                id=node_id,
                name=_name(record.get("categoryName")),
                parent_id=parent_id,
            )
            order.append(node_id)
        children = record.get("children")
        if not isinstance(children, list):
            continue
        for child in reversed(children):
            stack.append((child, node_id))

    roots: List[CategoryNode] = []
    for node_id in order:
        node = index[node_id]
        parent = index.get(node.parent_id) if node.parent_id is not None else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots, index


def flatten(forest: List[CategoryNode]) -> List[CategoryNode]:
    """Pre-order listing of every node reachable from the given roots"""
    flattened: List[CategoryNode] = []
    visited = set()
    stack = list(reversed(forest))
    while stack:
        node = stack.pop()
        if node.id in visited:
            continue
        visited.add(node.id)
        flattened.append(node)
        stack.extend(reversed(node.children))
    return flattened


def hierarchy_stats(forest: List[CategoryNode]) -> HierarchyStats:
    stats = HierarchyStats(total_root_categories=len(forest))
    visited = set()
    stack = [(node, 1) for node in forest]
    while stack:
        node, depth = stack.pop()
        if node.id in visited:
            continue
        visited.add(node.id)
        stats.max_depth = max(stats.max_depth, depth)
        for child in node.children:
            stack.append((child, depth + 1))
    stats.total_child_categories = len(visited) - len({n.id for n in forest})
    return stats


class CategoryResolver:
    """Cached flat and hierarchical category views over the provider"""

    def __init__(
        self,
        client: KiotVietClient,
        settings: SyncSettings,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.client = client
        self.settings = settings
        self._clock = clock or time.monotonic
        self._flat: Optional[Dict[ExternalId, str]] = None
        self._flat_fetched_at = 0.0
        self._forest: Optional[List[CategoryNode]] = None
        self._index: Dict[ExternalId, CategoryNode] = {}
        self._tree_fetched_at = 0.0

    def _is_fresh(self, fetched_at: float) -> bool:
        return self._clock() - fetched_at < self.settings.category_cache_ttl

    async def _fetch_records(self, hierarchical: bool) -> List[Dict[str, Any]]:
        page_size = self.settings.page_size
        records: List[Dict[str, Any]] = []
        offset = 0
        for _ in range(self.settings.max_pages):
            params: Dict[str, Any] = {"pageSize": page_size, "currentItem": offset}
            if hierarchical:
                params["hierarchicalData"] = "true"
            page = await self.client.get_page(EntityKind.CATEGORY, params, page_size)
            if not page.records:
                break
            records.extend(page.records)
            offset += page_size
            # Nested listings count roots only, so stop on a short page too
            if offset >= page.total or len(page.records) < page_size:
                break
        return records

    async def fetch_flat(self) -> Dict[ExternalId, str]:
        if self._flat is not None and self._is_fresh(self._flat_fetched_at):
            return self._flat

        records = await self._fetch_records(hierarchical=False)
        _, index = build_forest(records)
        self._flat = {node_id: node.name for node_id, node in index.items()}
        self._flat_fetched_at = self._clock()
        logger.info("categories_fetched", mode="flat", count=len(self._flat))
        return self._flat

    async def fetch_tree(self) -> List[CategoryNode]:
        if self._forest is not None and self._is_fresh(self._tree_fetched_at):
            return self._forest

        records = await self._fetch_records(hierarchical=True)
        self._forest, self._index = build_forest(records)
        self._tree_fetched_at = self._clock()
        logger.info(
            "categories_fetched",
            mode="hierarchical",
            roots=len(self._forest),
            count=len(self._index),
        )
        return self._forest

    async def resolve_names(self, names: Iterable[str]) -> List[ExternalId]:
        """Case-insensitive name lookup; unknown names are logged and skipped"""
        flat = await self.fetch_flat()
        by_name: Dict[str, ExternalId] = {}
        for category_id, name in flat.items():
            by_name.setdefault(name.strip().lower(), category_id)

        resolved: List[ExternalId] = []
        for name in names:
            category_id = by_name.get(name.strip().lower())
            if category_id is None:
                logger.warning("category_name_not_found", name=name)
                continue
            if category_id not in resolved:
                resolved.append(category_id)
        return resolved

    async def resolve_descendants(self, root_ids: Iterable[ExternalId]) -> List[ExternalId]:
        """Roots first, then every transitive child, without duplicates"""
        roots = list(dict.fromkeys(root_ids))
        try:
            await self.fetch_tree()
        except FATAL_ERRORS:
            raise
        except SyncError as exc:
            logger.warning("category_tree_unavailable_using_roots", error=str(exc), roots=roots)
            return roots

        max_depth = self.settings.max_category_depth
        result = list(roots)
        visited = set(roots)
        queue = deque((root_id, 0) for root_id in roots)
        while queue:
            node_id, depth = queue.popleft()
            node = self._index.get(node_id)
            if node is None:
                continue
            if depth >= max_depth:
                logger.warning("category_depth_cap_reached", category_id=node_id, depth=depth)
                continue
            for child in node.children:
                if child.id in visited:
                    continue
                visited.add(child.id)
                result.append(child.id)
                queue.append((child.id, depth + 1))

        logger.info("category_descendants_resolved", roots=roots, total=len(result))
        return result

    async def hierarchy_stats(self) -> HierarchyStats:
        return hierarchy_stats(await self.fetch_tree())

    def clear_cache(self) -> None:
        self._flat = None
        self._forest = None
        self._index = {}
        self._flat_fetched_at = 0.0
        self._tree_fetched_at = 0.0
