from typing import Optional

from fastapi import Depends, Header, Request

from marketplace.errors import AuthorizationError, NotFound
from marketplace.orders import OrderPlacementEngine
from marketplace.policy import Caller
from marketplace.storage import StorageAdapter


def get_storage(request: Request) -> StorageAdapter:
    return request.app.state.storage


def get_notifier(request: Request):
    return getattr(request.app.state, "notifier", None)


def get_order_engine(
    storage: StorageAdapter = Depends(get_storage),
    notifier=Depends(get_notifier),
) -> OrderPlacementEngine:
    return OrderPlacementEngine(storage, notifier)


async def get_caller(
    x_user_id: Optional[str] = Header(None),
    storage: StorageAdapter = Depends(get_storage),
) -> Caller:
    """
    Resolve the caller from the identity the upstream auth layer attaches
    (``X-User-Id``). The role always comes from the users collection.
    """
    if not x_user_id:
        return Caller.anonymous()
    try:
        user = await storage.get("users", x_user_id)
    except NotFound:
        raise AuthorizationError("Unknown caller")
    return Caller(id=user.id, role=user.role)
