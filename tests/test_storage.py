import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import NotFound, StorageUnavailable, ValidationError
from marketplace.models import Order, OrderStatus, Product
from marketplace.storage import StorageAdapter
from tests.helpers import add_market, add_product


@pytest.mark.asyncio
async def test_put_assigns_id_and_timestamps(storage):
    product = await storage.put("products", Product(
        seller_id="seller-1", market_id="market-1", category="fruit", name="Lulo", price=1, stock_quantity=3
    ))

    assert product.id
    assert product.created_at is not None
    assert product.updated_at >= product.created_at

    stored = await storage.get("products", product.id)
    assert stored.name == "Lulo"
    assert stored.created_at == product.created_at


@pytest.mark.asyncio
async def test_put_upserts_and_keeps_created_at(storage):
    product = await add_product(storage, "p1")
    product.name = "Renamed"
    updated = await storage.put("products", product)

    assert updated.name == "Renamed"
    assert updated.created_at == product.created_at
    assert len(await storage.scan("products")) == 1


@pytest.mark.asyncio
async def test_put_rejects_entity_of_wrong_collection(storage):
    with pytest.raises(TypeError):
        await storage.put("orders", Product(id="p1"))


@pytest.mark.asyncio
async def test_get_missing_raises_not_found(storage):
    with pytest.raises(NotFound) as exc_info:
        await storage.get("products", "missing")
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_delete(storage):
    await add_product(storage, "p1")
    await storage.delete("products", "p1")

    with pytest.raises(NotFound):
        await storage.get("products", "p1")
    with pytest.raises(NotFound):
        await storage.delete("products", "p1")


@pytest.mark.asyncio
async def test_query_by_index_orders_by_sort_key(storage):
    base = datetime(2024, 1, 1)
    for product_id, offset, market_id in (("late", 3, "m1"), ("early", 1, "m1"), ("other", 2, "m2"), ("middle", 2, "m1")):
        product = Product(
            id=product_id, seller_id="s1", market_id=market_id, category="fruit", name=product_id,
            price=1, stock_quantity=1, created_at=base + timedelta(days=offset),
        )
        await storage.put("products", product)

    results = await storage.query_by_index("products", "marketId-index", "m1")
    assert [p.id for p in results] == ["early", "middle", "late"]

    windowed = await storage.query_by_index(
        "products", "marketId-index", "m1", sort_range=(base + timedelta(days=2), None)
    )
    assert [p.id for p in windowed] == ["middle", "late"]


@pytest.mark.asyncio
async def test_query_by_unknown_index_is_rejected(storage):
    with pytest.raises(ValueError):
        await storage.query_by_index("products", "city-index", "Medellin")


@pytest.mark.asyncio
async def test_markets_city_index_sorts_by_name(storage):
    await add_market(storage, "m-2", city="Medellin", name="Placita")
    await add_market(storage, "m-1", city="Medellin", name="Mercado")
    await add_market(storage, "m-3", city="Bogota", name="Abastos")

    results = await storage.query_by_index("markets", "city-index", "Medellin")
    assert [m.name for m in results] == ["Mercado", "Placita"]


@pytest.mark.asyncio
async def test_scan_with_predicate(storage):
    await add_product(storage, "p1", category="fruit")
    await add_product(storage, "p2", category="coffee")

    assert {p.id for p in await storage.scan("products")} == {"p1", "p2"}
    assert [p.id for p in await storage.scan("products", lambda p: p.category == "coffee")] == ["p2"]


@pytest.mark.asyncio
async def test_adjust_respects_floor(storage):
    await add_product(storage, "p1", stock=5)

    updated = await storage.adjust("products", "p1", "stock_quantity", -3)
    assert updated.stock_quantity == 2

    assert await storage.adjust("products", "p1", "stock_quantity", -3) is None
    assert (await storage.get("products", "p1")).stock_quantity == 2

    restored = await storage.adjust("products", "p1", "stock_quantity", 3, floor=None)
    assert restored.stock_quantity == 5


@pytest.mark.asyncio
async def test_adjust_missing_entity_returns_none(storage):
    assert await storage.adjust("products", "missing", "stock_quantity", 1, floor=None) is None


@pytest.mark.asyncio
async def test_conditional_update_applies_only_when_expected_matches(storage):
    await storage.put("orders", Order(
        id="o1", user_id="u1", seller_id="s1", items="[]", total_amount=0, status=OrderStatus.PENDING
    ))

    confirmed = await storage.conditional_update(
        "orders", "o1", {"status": OrderStatus.CONFIRMED}, {"status": OrderStatus.PENDING}
    )
    assert confirmed.status == OrderStatus.CONFIRMED

    again = await storage.conditional_update(
        "orders", "o1", {"status": OrderStatus.CANCELLED}, {"status": OrderStatus.PENDING}
    )
    assert again is None
    assert (await storage.get("orders", "o1")).status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_check_constraint_violation_is_a_validation_error(storage):
    await add_product(storage, "p1", stock=1)
    with pytest.raises(ValidationError):
        await storage.conditional_update("products", "p1", {"stock_quantity": -1}, {})


@pytest.mark.asyncio
async def test_storage_failure_is_retried(storage, session_factory):
    await add_product(storage, "p1")
    outage = OperationalError("SELECT", {}, Exception("connection refused"))
    flaky_factory = MagicMock(side_effect=[outage, session_factory()])
    flaky = StorageAdapter(flaky_factory, retry_backoff=0)

    product = await flaky.get("products", "p1")

    assert product.id == "p1"
    assert flaky_factory.call_count == 2


@pytest.mark.asyncio
async def test_storage_unavailable_after_bounded_retries(session_factory):
    outage = OperationalError("SELECT", {}, Exception("connection refused"))
    dead_factory = MagicMock(side_effect=outage)
    dead = StorageAdapter(dead_factory, retry_attempts=3, retry_backoff=0)

    with pytest.raises(StorageUnavailable) as exc_info:
        await dead.get("products", "p1")

    assert exc_info.value.status_code == 503
    assert dead_factory.call_count == 3


@pytest.mark.asyncio
async def test_adjust_is_applied_once_when_reads_fail(storage):
    await add_product(storage, "p1", stock=10)
    outage = OperationalError("SELECT", {}, Exception("connection reset"))

    with patch.object(AsyncSession, "get", side_effect=outage):
        updated = await storage.adjust("products", "p1", "stock_quantity", -3)
        rejected = await storage.adjust("products", "p1", "stock_quantity", -8)

    assert updated.stock_quantity == 7
    assert rejected is None
    assert (await storage.get("products", "p1")).stock_quantity == 7


@pytest.mark.asyncio
async def test_conditional_update_is_applied_once_when_reads_fail(storage):
    await add_product(storage, "p1", stock=10)
    outage = OperationalError("SELECT", {}, Exception("connection reset"))

    with patch.object(AsyncSession, "get", side_effect=outage):
        updated = await storage.conditional_update("products", "p1", {"name": "Renamed"}, {"seller_id": "seller-1"})

    assert updated.name == "Renamed"
    assert (await storage.get("products", "p1")).name == "Renamed"


@pytest.mark.asyncio
async def test_constraint_violation_does_not_expose_driver_text(storage):
    await add_product(storage, "p1", stock=1)

    with pytest.raises(ValidationError) as exc_info:
        await storage.conditional_update("products", "p1", {"name": None}, {})

    assert exc_info.value.details is None
    assert "NOT NULL" not in exc_info.value.message
