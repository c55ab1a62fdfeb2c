import pytest

from marketplace.models import UserRole
from marketplace.seeder import seed


@pytest.mark.asyncio
async def test_seed_populates_every_collection(storage):
    assert await seed(storage) is True

    assert len(await storage.scan("markets")) == 3
    assert len(await storage.scan("products")) == 4
    users = await storage.query_by_index("users", "email-index", "ana@example.com")
    assert [u.role for u in users] == [UserRole.CUSTOMER]


@pytest.mark.asyncio
async def test_seed_is_idempotent(storage):
    await seed(storage)
    assert await seed(storage) is False
    assert len(await storage.scan("users")) == 3
