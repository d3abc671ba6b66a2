"""
Catalog entities, provider pages and sync result value objects.

Provider payloads are camelCase JSON; everything here converts them into
plain dataclasses and back into JSON-ready dicts for callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict, List, Optional, TypeAlias

ExternalId: TypeAlias = int


@dataclass(frozen=True)
class EndpointConfig:
    path: str
    id_field: str


class EntityKind(StrEnum):
    """Catalog entity types; endpoint and identifier field come from ``ENDPOINTS``"""
    TRADEMARK = "trademark"
    CATEGORY = "category"
    PRODUCT = "product"

    @property
    def label(self) -> str:
        return self.value

    @property
    def endpoint(self) -> str:
        return ENDPOINTS[self].path

    @property
    def id_field(self) -> str:
        return ENDPOINTS[self].id_field


ENDPOINTS: Dict[EntityKind, EndpointConfig] = {
    EntityKind.TRADEMARK: EndpointConfig("/trademark", "tradeMarkId"),
    EntityKind.CATEGORY: EndpointConfig("/categories", "categoryId"),
    EntityKind.PRODUCT: EndpointConfig("/products", "id"),
}


def _text(value: Any) -> str:
    """Stripped string form of a provider text field; ``None`` becomes empty"""
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> Optional[str]:
    text = _text(value)
    return text or None


def _require_mapping(data: Any, entity: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{entity} record is {type(data).__name__}, expected an object")
    return data


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_images(images: Any) -> List[str]:
    """Flatten ``["url"]`` or ``[{"Image": "url"}]`` image lists into URLs"""
    if not isinstance(images, list):
        return []
    urls: List[str] = []
    for image in images:
        if isinstance(image, str):
            url = image
        elif isinstance(image, dict):
            url = image.get("Image") or image.get("image")
        else:
            continue
        url = _text(url)
        if url:
            urls.append(url)
    return urls


def extract_external_id(record: Any, entity: EntityKind) -> Optional[ExternalId]:
    if not isinstance(record, dict):
        return None
    return _optional_int(record.get(entity.id_field))


@dataclass
class Trademark:
    trademark_id: ExternalId
    name: str
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Any) -> Trademark:
        data = _require_mapping(data, "trademark")
        trademark_id = _optional_int(data.get("tradeMarkId"))
        if trademark_id is None:
            raise ValueError("trademark without tradeMarkId")
        return cls(
            trademark_id=trademark_id,
            name=_text(data.get("tradeMarkName")),
            created_date=_parse_datetime(data.get("createdDate")),
            modified_date=_parse_datetime(data.get("modifiedDate")),
        )

    @property
    def external_id(self) -> ExternalId:
        return self.trademark_id

    def to_fields(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_date": _isoformat(self.created_date),
            "modified_date": _isoformat(self.modified_date),
        }


@dataclass
class Category:
    category_id: ExternalId
    name: str
    parent_id: Optional[ExternalId] = None
    has_child: bool = False
    rank: Optional[int] = None
    retailer_id: Optional[int] = None
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Any) -> Category:
        data = _require_mapping(data, "category")
        category_id = _optional_int(data.get("categoryId"))
        if category_id is None:
            raise ValueError("category without categoryId")
        return cls(
            category_id=category_id,
            name=_text(data.get("categoryName")),
            parent_id=_optional_int(data.get("parentId")),
            has_child=bool(data.get("hasChild") or data.get("children")),
            rank=_optional_int(data.get("rank")),
            retailer_id=_optional_int(data.get("retailerId")),
            created_date=_parse_datetime(data.get("createdDate")),
            modified_date=_parse_datetime(data.get("modifiedDate")),
        )

    @property
    def external_id(self) -> ExternalId:
        return self.category_id

    def to_fields(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "parent_id": self.parent_id,
            "has_child": self.has_child,
            "rank": self.rank,
            "retailer_id": self.retailer_id,
            "created_date": _isoformat(self.created_date),
            "modified_date": _isoformat(self.modified_date),
        }


@dataclass
class Product:
    product_id: ExternalId
    code: str
    name: str
    full_name: Optional[str] = None
    base_price: Optional[float] = None
    images: List[str] = field(default_factory=list)
    product_type: Optional[int] = None  # 1=combo, 2=normal, 3=service
    category_id: Optional[ExternalId] = None
    category_name: Optional[str] = None
    trademark_id: Optional[ExternalId] = None
    trademark_name: Optional[str] = None
    allows_sale: bool = True
    description: Optional[str] = None
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Any) -> Product:
        data = _require_mapping(data, "product")
        product_id = _optional_int(data.get("id"))
        if product_id is None:
            raise ValueError("product without id")
        price = data.get("basePrice")
        return cls(
            product_id=product_id,
            code=_text(data.get("code")),
            name=_text(data.get("name")),
            full_name=_optional_text(data.get("fullName")),
            base_price=float(price) if price is not None else None,
            images=normalize_images(data.get("images")),
            product_type=_optional_int(data.get("type")),
            category_id=_optional_int(data.get("categoryId")),
            category_name=_optional_text(data.get("categoryName")),
            trademark_id=_optional_int(data.get("tradeMarkId")),
            trademark_name=_optional_text(data.get("tradeMarkName")),
            allows_sale=data.get("allowsSale") is not False,
            description=_optional_text(data.get("description")),
            created_date=_parse_datetime(data.get("createdDate")),
            modified_date=_parse_datetime(data.get("modifiedDate")),
        )

    @property
    def external_id(self) -> ExternalId:
        return self.product_id

    def to_fields(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "title": self.name,
            "full_name": self.full_name,
            "price": self.base_price,
            "images": list(self.images),
            "type": self.product_type,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "trademark_id": self.trademark_id,
            "trademark_name": self.trademark_name,
            "description": self.description,
            "is_visible": self.allows_sale,
            "modified_date": _isoformat(self.modified_date),
        }


ENTITY_PARSERS = {
    EntityKind.TRADEMARK: Trademark.from_api,
    EntityKind.CATEGORY: Category.from_api,
    EntityKind.PRODUCT: Product.from_api,
}


@dataclass
class CategoryNode:
    """One node of the provider's category forest"""
    id: ExternalId
    name: str
    parent_id: Optional[ExternalId] = None
    children: List[CategoryNode] = field(default_factory=list)


@dataclass
class Page:
    """One page of a provider listing"""
    total: int
    page_size: int
    records: List[Dict[str, Any]] = field(default_factory=list)
    removed_ids: List[ExternalId] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Any, requested_page_size: int) -> Page:
        if isinstance(payload, list):
            return cls(total=len(payload), page_size=requested_page_size, records=payload)
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected page payload type: {type(payload).__name__}")
        records = payload.get("data") or []
        if not isinstance(records, list):
            raise ValueError(f"Unexpected page data type: {type(records).__name__}")
        removed = [rid for rid in (_optional_int(r) for r in payload.get("removeId") or []) if rid is not None]
        total = _optional_int(payload.get("total"))
        return cls(
            total=total if total is not None else len(records),
            page_size=_optional_int(payload.get("pageSize")) or requested_page_size,
            records=list(records),
            removed_ids=removed,
        )


@dataclass
class BatchInfo:
    batch_number: int
    offset: int
    items_fetched: int
    category_id: Optional[ExternalId] = None


@dataclass
class HierarchyStats:
    total_root_categories: int = 0
    total_child_categories: int = 0
    max_depth: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalRootCategories": self.total_root_categories,
            "totalChildCategories": self.total_child_categories,
            "maxDepth": self.max_depth,
        }


@dataclass
class IntegrityReport:
    fetched_count: int
    unique_count: int
    reported_total: Optional[int]
    duplicate_ids: List[ExternalId] = field(default_factory=list)
    missing_id_count: int = 0
    count_mismatch: bool = False
    filtered: bool = False

    @property
    def is_clean(self) -> bool:
        return not self.duplicate_ids and not self.missing_id_count and not self.count_mismatch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetchedCount": self.fetched_count,
            "uniqueCount": self.unique_count,
            "reportedTotal": self.reported_total,
            "duplicateIds": list(self.duplicate_ids),
            "missingIdCount": self.missing_id_count,
            "countMismatch": self.count_mismatch,
            "filtered": self.filtered,
        }


class RecordAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RecordOutcome:
    """Result of reconciling one fetched record against the store"""
    external_id: Optional[ExternalId]
    action: RecordAction
    error: Optional[str] = None


@dataclass
class SyncResult:
    """Audit trail of one sync invocation for one entity type"""
    entity: str
    sync_id: str
    total_fetched: int = 0
    new_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    before_count: int = 0
    after_count: int = 0
    removed_ids: List[ExternalId] = field(default_factory=list)
    integrity: Optional[IntegrityReport] = None
    hierarchy: Optional[HierarchyStats] = None
    batches: List[BatchInfo] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, external_id: Any, message: str, kind: str) -> None:
        self.errors.append({"id": external_id, "message": message, "kind": kind})

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "entity": self.entity,
            "syncId": self.sync_id,
            "success": self.success,
            "totalFetched": self.total_fetched,
            "newCount": self.new_count,
            "updatedCount": self.updated_count,
            "skippedCount": self.skipped_count,
            "beforeCount": self.before_count,
            "afterCount": self.after_count,
            "removedIds": list(self.removed_ids),
            "errors": list(self.errors),
            "errorCount": len(self.errors),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": _isoformat(self.finished_at),
            "performance": {
                "totalBatches": len(self.batches),
                "averageBatchSize": (
                    round(sum(b.items_fetched for b in self.batches) / len(self.batches))
                    if self.batches else 0
                ),
            },
        }
        if self.integrity is not None:
            data["integrity"] = self.integrity.to_dict()
        if self.hierarchy is not None:
            data["hierarchicalStructure"] = self.hierarchy.to_dict()
        return data


@dataclass
class FullSyncResult:
    trademarks: SyncResult
    categories: SyncResult
    products: SyncResult

    @property
    def errors(self) -> List[Dict[str, Any]]:
        flattened: List[Dict[str, Any]] = []
        for result in (self.trademarks, self.categories, self.products):
            for error in result.errors:
                flattened.append({"entity": result.entity, **error})
        return flattened

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "trademarks": self.trademarks.to_dict(),
            "categories": self.categories.to_dict(),
            "products": self.products.to_dict(),
            "errors": self.errors,
        }


@dataclass
class SyncReadiness:
    can_sync_products: bool
    categories_count: int
    trademarks_count: int
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "canSyncProducts": self.can_sync_products,
            "categoriesCount": self.categories_count,
            "trademarksCount": self.trademarks_count,
            "recommendations": list(self.recommendations),
        }
