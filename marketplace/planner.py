"""
Query planner: index lookup when a single filter matches an index partition
key, full scan with an AND predicate otherwise.

Scans cost O(collection size). They are acceptable for small collections
(markets, early product catalogues) but should not stay the primary path once
a collection grows past a few thousand items; add an index instead.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from marketplace.errors import ValidationError
from marketplace.storage import INDEXES, IndexSpec, StorageAdapter, model_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryOp:
    collection: str
    index: Optional[IndexSpec] = None
    key: Any = None
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_index_lookup(self) -> bool:
        return self.index is not None


def plan(collection: str, filters: Optional[Dict[str, Any]] = None) -> QueryOp:
    model = model_for(collection)
    active = {name: value for name, value in (filters or {}).items() if value not in (None, "")}

    columns = set(model.__table__.columns.keys())
    unknown = [name for name in active if name not in columns]
    if unknown:
        raise ValidationError(f"Cannot filter {collection} by {', '.join(unknown)}", {"fields": unknown})

    if len(active) == 1:
        (name, value), = active.items()
        for index in INDEXES.get(collection, ()):
            if index.partition_key == name:
                return QueryOp(collection, index=index, key=value, filters=active)

    return QueryOp(collection, filters=active)


def _matches(filters: Dict[str, Any]):
    def predicate(entity) -> bool:
        return all(getattr(entity, name) == value for name, value in filters.items())
    return predicate


async def execute(storage: StorageAdapter, op: QueryOp) -> List:
    if op.is_index_lookup:
        return await storage.query_by_index(op.collection, op.index.name, op.key)
    if op.filters:
        logger.info(f"Scanning {op.collection} with filters {sorted(op.filters)}")
        return await storage.scan(op.collection, _matches(op.filters))
    return await storage.scan(op.collection)
