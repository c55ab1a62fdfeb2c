"""
Storage adapter over the four marketplace collections.

Every operation runs in its own short session and is atomic for a single
entity only. Multi-entity consistency (stock across line items) is the
caller's job, built on the conditional writes ``adjust`` and
``conditional_update``.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import delete as sql_delete, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketplace import config
from marketplace.errors import NotFound, StorageUnavailable, ValidationError
from marketplace.models import Market, Order, Product, User

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "products": Product,
    "users": User,
    "orders": Order,
    "markets": Market,
}


@dataclass(frozen=True)
class IndexSpec:
    name: str
    partition_key: str
    sort_key: Optional[str] = None


INDEXES: Dict[str, Tuple[IndexSpec, ...]] = {
    "products": (
        IndexSpec("marketId-index", "market_id", "created_at"),
        IndexSpec("category-index", "category", "created_at"),
        IndexSpec("sellerId-index", "seller_id", "created_at"),
    ),
    "users": (
        IndexSpec("email-index", "email"),
    ),
    "orders": (
        IndexSpec("userId-index", "user_id", "created_at"),
        IndexSpec("sellerId-index", "seller_id", "created_at"),
    ),
    "markets": (
        IndexSpec("city-index", "city", "name"),
    ),
}


def model_for(collection: str):
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}")


def find_index(collection: str, index_name: str) -> IndexSpec:
    for index in INDEXES.get(collection, ()):
        if index.name == index_name:
            return index
    raise ValueError(f"Unknown index {index_name} on {collection}")


class StorageAdapter:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_attempts: int = config.STORAGE_RETRY_ATTEMPTS,
        retry_backoff: float = config.STORAGE_RETRY_BACKOFF,
        retry_max_wait: float = config.STORAGE_RETRY_MAX_WAIT,
    ):
        self._session_factory = session_factory
        self._retrying = AsyncRetrying(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=retry_backoff, max=retry_max_wait),
            retry=retry_if_exception_type(StorageUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _run(self, operation: Callable, *args, **kwargs):
        # copy() keeps retry state per call; the adapter is shared across requests
        return await self._retrying.copy()(operation, *args, **kwargs)

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError as e:
            logger.warning(f"Write rejected by storage constraints: {e.orig}")
            raise ValidationError("Write rejected by storage constraints") from e
        except (OperationalError, InterfaceError, OSError) as e:
            logger.warning(f"Storage backend failure: {e}")
            raise StorageUnavailable("Storage backend is unavailable") from e

    async def get(self, collection: str, entity_id: str):
        return await self._run(self._get, collection, entity_id)

    async def put(self, collection: str, entity):
        return await self._run(self._put, collection, entity)

    async def delete(self, collection: str, entity_id: str) -> None:
        await self._run(self._delete, collection, entity_id)

    async def query_by_index(
        self,
        collection: str,
        index_name: str,
        key: Any,
        sort_range: Optional[Tuple[Any, Any]] = None,
    ) -> List:
        return await self._run(self._query_by_index, collection, index_name, key, sort_range)

    async def scan(self, collection: str, predicate: Optional[Callable[[Any], bool]] = None) -> List:
        return await self._run(self._scan, collection, predicate)

    async def adjust(self, collection: str, entity_id: str, field: str, delta: int, floor: Optional[int] = 0):
        """
        Atomically add ``delta`` to a numeric field, but only when the result
        stays at or above ``floor`` (pass ``floor=None`` for no condition).
        Returns the updated entity, or None when the condition did not hold or
        the entity does not exist.
        """
        return await self._run(self._adjust, collection, entity_id, field, delta, floor)

    async def conditional_update(self, collection: str, entity_id: str, values: Dict[str, Any], expected: Dict[str, Any]):
        """
        Atomically apply ``values`` only when every field in ``expected``
        currently holds the given value. Returns the updated entity or None.
        """
        return await self._run(self._conditional_update, collection, entity_id, values, expected)

    async def _get(self, collection, entity_id):
        model = model_for(collection)
        async with self._session() as session:
            entity = await session.get(model, entity_id)
        if entity is None:
            raise NotFound(collection, entity_id)
        return entity

    async def _put(self, collection, entity):
        model = model_for(collection)
        if not isinstance(entity, model):
            raise TypeError(f"{type(entity).__name__} cannot be stored in {collection}")
        now = datetime.utcnow()
        if not entity.id:
            entity.id = str(uuid4())
        if entity.created_at is None:
            entity.created_at = now
        entity.updated_at = now
        async with self._session() as session:
            stored = await session.merge(entity)
            await session.commit()
        return stored

    async def _delete(self, collection, entity_id):
        model = model_for(collection)
        async with self._session() as session:
            result = await session.execute(sql_delete(model).where(model.id == entity_id))
            await session.commit()
        if result.rowcount == 0:
            raise NotFound(collection, entity_id)

    async def _query_by_index(self, collection, index_name, key, sort_range):
        model = model_for(collection)
        index = find_index(collection, index_name)
        stmt = select(model).where(getattr(model, index.partition_key) == key)
        if index.sort_key:
            sort_column = getattr(model, index.sort_key)
            if sort_range:
                low, high = sort_range
                if low is not None:
                    stmt = stmt.where(sort_column >= low)
                if high is not None:
                    stmt = stmt.where(sort_column <= high)
            stmt = stmt.order_by(sort_column, model.id)
        elif sort_range:
            raise ValueError(f"Index {index_name} has no sort key")
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _scan(self, collection, predicate):
        model = model_for(collection)
        stmt = select(model).order_by(model.created_at, model.id)
        async with self._session() as session:
            result = await session.execute(stmt)
            entities = result.scalars().all()
        if predicate is None:
            return list(entities)
        return [entity for entity in entities if predicate(entity)]

    async def _adjust(self, collection, entity_id, field, delta, floor):
        model = model_for(collection)
        column = getattr(model, field)
        stmt = update(model).where(model.id == entity_id)
        if floor is not None:
            stmt = stmt.where(column + delta >= floor)
        stmt = stmt.values({field: column + delta, "updated_at": datetime.utcnow()})
        return await self._write_returning(model, stmt)

    async def _conditional_update(self, collection, entity_id, values, expected):
        model = model_for(collection)
        stmt = update(model).where(model.id == entity_id)
        for name, value in expected.items():
            stmt = stmt.where(getattr(model, name) == value)
        stmt = stmt.values({**values, "updated_at": datetime.utcnow()})
        return await self._write_returning(model, stmt)

    async def _write_returning(self, model, stmt):
        # Write and read back in one statement; nothing runs after the commit
        # that could fail and make the retry apply the update twice.
        stmt = stmt.returning(model).execution_options(synchronize_session=False)
        async with self._session() as session:
            result = await session.execute(stmt)
            entity = result.scalars().first()
            await session.commit()
        return entity
