"""
Order placement.

Stock is the only contended resource. It is guarded by the storage adapter's
conditional decrement (``adjust`` with ``floor=0``), never by a lock:
the first decrement to land wins and later ones that would push stock below
zero fail. An order is all-or-nothing; every decrement already applied is
restored when a later line item fails, when persisting the order fails, or
when the request is cancelled midway.
"""
import asyncio
import json
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from marketplace import config
from marketplace.errors import InsufficientStock, NotFound, ProductNotFound, ValidationError
from marketplace.messaging import EventType
from marketplace.models import Order, OrderStatus
from marketplace.policy import Action, Caller, enforce
from marketplace.storage import StorageAdapter

logger = logging.getLogger(__name__)


def _line(item: Any) -> Tuple[str, int]:
    if isinstance(item, dict):
        return item.get("product_id"), item.get("quantity")
    return item.product_id, item.quantity


class OrderPlacementEngine:
    def __init__(self, storage: StorageAdapter, notifier=None, low_stock_threshold: int = config.LOW_STOCK_THRESHOLD):
        self.storage = storage
        self.notifier = notifier
        self.low_stock_threshold = low_stock_threshold

    async def place_order(self, buyer_id: str, line_items: Sequence[Any]) -> Order:
        lines = [_line(item) for item in line_items]
        if not lines:
            raise ValidationError("An order needs at least one line item")
        invalid = [position for position, (_, quantity) in enumerate(lines) if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0]
        if invalid:
            raise ValidationError("Line item quantities must be positive integers", {"items": invalid})

        products = OrderedDict()
        for product_id, _ in lines:
            if product_id in products:
                continue
            try:
                products[product_id] = await self.storage.get("products", product_id)
            except NotFound:
                raise ProductNotFound(product_id)

        sellers = {product.seller_id for product in products.values()}
        if len(sellers) > 1:
            raise ValidationError("All line items must belong to the same seller", {"sellerIds": sorted(sellers)})
        seller_id = sellers.pop()

        # Snapshot: prices are never re-read after this point
        snapshot = [
            {"product_id": product_id, "quantity": quantity, "unit_price_at_purchase": str(products[product_id].price)}
            for product_id, quantity in lines
        ]
        total = sum((Decimal(item["unit_price_at_purchase"]) * item["quantity"] for item in snapshot), Decimal("0"))

        requested = OrderedDict()
        for product_id, quantity in lines:
            requested[product_id] = requested.get(product_id, 0) + quantity
        for product_id, quantity in requested.items():
            available = products[product_id].stock_quantity
            if available < quantity:
                raise InsufficientStock(product_id, quantity, available)

        applied: List[Tuple[str, int]] = []
        remaining = {}
        pending = None
        order_id = None
        try:
            for product_id, quantity in lines:
                # Shielded so a committed decrement is recorded even if the request is cancelled meanwhile
                pending = asyncio.ensure_future(self._decrement(product_id, quantity, applied))
                updated = await asyncio.shield(pending)
                if updated is None:
                    await self._raise_for_failed_decrement(product_id, quantity)
                remaining[product_id] = updated.stock_quantity

            order_id = str(uuid4())
            order = Order(
                id=order_id,
                user_id=buyer_id,
                seller_id=seller_id,
                items=json.dumps(snapshot),
                total_amount=total,
                status=OrderStatus.PENDING,
            )
            pending = asyncio.ensure_future(self.storage.put("orders", order))
            order = await asyncio.shield(pending)
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(f"Order for buyer {buyer_id} failed ({type(e).__name__})")
            await asyncio.shield(self._roll_back(pending, applied, order_id))
            raise

        logger.info(f"Order {order.id} placed by {buyer_id} for {len(lines)} line items, total {total}")

        await self._notify(EventType.ORDER_CREATED, {
            "order_id": order.id,
            "user_id": buyer_id,
            "seller_id": seller_id,
            "items": snapshot,
            "total_amount": str(total),
        })
        for product_id, stock in remaining.items():
            if stock <= self.low_stock_threshold:
                await self._notify(EventType.STOCK_LOW, {
                    "product_id": product_id,
                    "seller_id": seller_id,
                    "stock_quantity": stock,
                })
        return order

    async def cancel_order(self, caller: Caller, order_id: str) -> Order:
        order = await self.storage.get("orders", order_id)
        enforce(caller, Action.CANCEL, "order", order)

        cancelled = await self.storage.conditional_update(
            "orders", order_id, {"status": OrderStatus.CANCELLED}, {"status": OrderStatus.PENDING}
        )
        if cancelled is None:
            raise ValidationError(f"Order {order_id} is no longer pending", {"status": order.status.value})

        items = json.loads(order.items)
        await self._restore_stock([(item["product_id"], item["quantity"]) for item in items])
        logger.info(f"Order {order_id} cancelled by {caller.id}")

        await self._notify(EventType.ORDER_CANCELLED, {
            "order_id": order_id,
            "user_id": order.user_id,
            "seller_id": order.seller_id,
            "cancelled_by": caller.id,
        })
        return cancelled

    async def confirm_order(self, caller: Caller, order_id: str) -> Order:
        order = await self.storage.get("orders", order_id)
        enforce(caller, Action.CONFIRM, "order", order)

        confirmed = await self.storage.conditional_update(
            "orders", order_id, {"status": OrderStatus.CONFIRMED}, {"status": OrderStatus.PENDING}
        )
        if confirmed is None:
            raise ValidationError(f"Order {order_id} is no longer pending", {"status": order.status.value})
        logger.info(f"Order {order_id} confirmed by {caller.id}")
        return confirmed

    async def _decrement(self, product_id: str, quantity: int, applied: List[Tuple[str, int]]):
        updated = await self.storage.adjust("products", product_id, "stock_quantity", -quantity, floor=0)
        if updated is not None:
            applied.append((product_id, quantity))
        return updated

    async def _raise_for_failed_decrement(self, product_id: str, quantity: int):
        try:
            await self.storage.get("products", product_id)
        except NotFound:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, quantity)

    async def _roll_back(self, pending: Optional[asyncio.Future], applied: List[Tuple[str, int]], order_id: Optional[str]):
        if pending is not None and not pending.done():
            await asyncio.wait([pending])
        if order_id is not None:
            try:
                await self.storage.delete("orders", order_id)
                logger.warning(f"Order {order_id} removed after its request failed")
            except NotFound:
                pass
            except Exception:
                logger.exception(f"Failed to remove order {order_id}")
        if applied:
            logger.warning(f"Restoring {len(applied)} stock decrements")
            await self._restore_stock(applied)

    async def _restore_stock(self, lines: Iterable[Tuple[str, int]]):
        for product_id, quantity in reversed(list(lines)):
            try:
                restored = await self.storage.adjust("products", product_id, "stock_quantity", quantity, floor=None)
            except Exception:
                logger.exception(f"Failed to restore {quantity} units of product {product_id}")
                continue
            if restored is None:
                logger.warning(f"Product {product_id} no longer exists; {quantity} units not restored")

    async def _notify(self, event_type: EventType, payload: dict):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event_type, payload)
        except Exception as e:
            logger.error(f"Notification {event_type.value} failed: {e}")
