import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Query

from marketplace import config, planner
from marketplace.database import create_engine, create_session_factory, init_db
from marketplace.dependencies import get_caller, get_order_engine, get_storage
from marketplace.envelope import register_exception_handlers, success
from marketplace.errors import AuthorizationError, NotFound, ValidationError
from marketplace.messaging import Notifier
from marketplace.models import Product
from marketplace.orders import OrderPlacementEngine
from marketplace.policy import Action, Caller, enforce, owner_fields
from marketplace.schemas import MarketRead, OrderCreate, OrderRead, ProductCreate, ProductRead, ProductUpdate, UserRead
from marketplace.storage import StorageAdapter

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Marketplace Service")
register_exception_handlers(app)


@app.on_event("startup")
async def startup_event():
    engine = create_engine(config.DATABASE_URL)
    await init_db(engine)
    app.state.db_engine = engine
    app.state.storage = StorageAdapter(create_session_factory(engine))
    app.state.notifier = Notifier()
    await app.state.notifier.setup()
    logger.info("Marketplace service started")


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.notifier.close()
    await app.state.db_engine.dispose()


@app.get("/health")
async def health_check():
    return success({"status": "ok"})


async def _require_market(storage: StorageAdapter, market_id: str):
    try:
        await storage.get("markets", market_id)
    except NotFound:
        raise ValidationError(f"Unknown market {market_id}", {"marketId": market_id})


# Products

@app.get("/products")
async def list_products(
    market_id: Optional[str] = Query(None, alias="marketId"),
    category: Optional[str] = None,
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    enforce(caller, Action.READ, "product")
    op = planner.plan("products", {"market_id": market_id, "category": category, "seller_id": seller_id})
    products = await planner.execute(storage, op)
    return success({"products": [ProductRead.model_validate(p) for p in products], "count": len(products)})


@app.get("/products/{product_id}")
async def get_product(
    product_id: str,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    product = await storage.get("products", product_id)
    enforce(caller, Action.READ, "product", product)
    return success(ProductRead.model_validate(product))


@app.post("/products")
async def create_product(
    product_data: ProductCreate,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    enforce(caller, Action.CREATE, "product")
    await _require_market(storage, product_data.market_id)
    product = Product(**product_data.model_dump(), **owner_fields(caller, "product"))
    product = await storage.put("products", product)
    logger.info(f"Product {product.id} created by seller {caller.id}")
    return success(ProductRead.model_validate(product), status_code=201)


@app.put("/products/{product_id}")
async def update_product(
    product_id: str,
    product_data: ProductUpdate,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    product = await storage.get("products", product_id)
    enforce(caller, Action.UPDATE, "product", product)

    changes = product_data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")
    if changes.get("market_id"):
        await _require_market(storage, changes["market_id"])

    # Ownership is re-checked in the write itself; stock is only written when supplied
    updated = await storage.conditional_update("products", product_id, changes, {"seller_id": caller.id})
    if updated is None:
        # Deleted since it was read
        await storage.get("products", product_id)
        raise AuthorizationError("Only the owning seller can modify this product")
    return success(ProductRead.model_validate(updated))


@app.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    product = await storage.get("products", product_id)
    enforce(caller, Action.DELETE, "product", product)
    await storage.delete("products", product_id)
    logger.info(f"Product {product_id} deleted by seller {caller.id}")
    return success({"id": product_id, "deleted": True})


# Markets

@app.get("/markets")
async def list_markets(
    city: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    enforce(caller, Action.READ, "market")
    markets = await planner.execute(storage, planner.plan("markets", {"city": city}))
    return success({"markets": [MarketRead.model_validate(m) for m in markets], "count": len(markets)})


@app.get("/markets/{market_id}")
async def get_market(
    market_id: str,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    market = await storage.get("markets", market_id)
    enforce(caller, Action.READ, "market", market)
    return success(MarketRead.model_validate(market))


# Orders

@app.post("/orders")
async def create_order(
    order_data: OrderCreate,
    caller: Caller = Depends(get_caller),
    engine: OrderPlacementEngine = Depends(get_order_engine),
):
    enforce(caller, Action.CREATE, "order")
    order = await engine.place_order(owner_fields(caller, "order")["user_id"], order_data.items)
    return success(OrderRead.model_validate(order), status_code=201)


@app.get("/orders")
async def list_orders(
    view: str = Query("purchases", pattern="^(purchases|sales)$"),
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    enforce(caller, Action.READ, "order")
    owner_field = "seller_id" if view == "sales" else "user_id"
    orders = await planner.execute(storage, planner.plan("orders", {owner_field: caller.id}))
    return success({"orders": [OrderRead.model_validate(o) for o in orders], "count": len(orders)})


@app.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    order = await storage.get("orders", order_id)
    enforce(caller, Action.READ, "order", order)
    return success(OrderRead.model_validate(order))


@app.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    caller: Caller = Depends(get_caller),
    engine: OrderPlacementEngine = Depends(get_order_engine),
):
    order = await engine.cancel_order(caller, order_id)
    return success(OrderRead.model_validate(order))


@app.post("/orders/{order_id}/confirm")
async def confirm_order(
    order_id: str,
    caller: Caller = Depends(get_caller),
    engine: OrderPlacementEngine = Depends(get_order_engine),
):
    order = await engine.confirm_order(caller, order_id)
    return success(OrderRead.model_validate(order))


# Users

@app.get("/users/me")
async def get_me(
    caller: Caller = Depends(get_caller),
    storage: StorageAdapter = Depends(get_storage),
):
    user = None if caller.is_anonymous else await storage.get("users", caller.id)
    enforce(caller, Action.READ, "user", user)
    return success(UserRead.model_validate(user))


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
