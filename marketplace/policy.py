"""
Ownership and role based authorization.

Identity comes only from the authenticated ``Caller``; identity fields in
request bodies are never consulted. Owner fields on created resources are
forced from the caller by ``owner_fields``.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

from marketplace.errors import AuthorizationError
from marketplace.models import UserRole


class Action(enum.Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CONFIRM = "confirm"
    CANCEL = "cancel"


SELLER_ROLES = (UserRole.SELLER, UserRole.BOTH)
CUSTOMER_ROLES = (UserRole.CUSTOMER, UserRole.BOTH)
PUBLIC_KINDS = ("product", "market")


@dataclass(frozen=True)
class Caller:
    id: Optional[str] = None
    role: Optional[UserRole] = None

    @property
    def is_anonymous(self) -> bool:
        return self.id is None

    @classmethod
    def anonymous(cls) -> "Caller":
        return cls()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self):
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


def authorize(caller: Caller, action: Action, kind: str, resource: Any = None) -> Decision:
    if caller.is_anonymous:
        if action is Action.READ and kind in PUBLIC_KINDS:
            return ALLOW
        return deny("Authentication required")

    if kind == "product":
        return _authorize_product(caller, action, resource)
    if kind == "market":
        if action is Action.READ:
            return ALLOW
        return deny("Markets are managed by administrators")
    if kind == "order":
        return _authorize_order(caller, action, resource)
    if kind == "user":
        if action is Action.READ and resource is not None and resource.id == caller.id:
            return ALLOW
        return deny("Users may only read their own profile")
    return deny(f"Unknown resource kind: {kind}")


def _authorize_product(caller: Caller, action: Action, product: Any) -> Decision:
    if action is Action.READ:
        return ALLOW
    if action is Action.CREATE:
        if caller.role in SELLER_ROLES:
            return ALLOW
        return deny("Only sellers can create products")
    if action in (Action.UPDATE, Action.DELETE):
        if product is not None and product.seller_id == caller.id:
            return ALLOW
        return deny("Only the owning seller can modify this product")
    return deny(f"Action {action.value} is not supported on products")


def _authorize_order(caller: Caller, action: Action, order: Any) -> Decision:
    if action is Action.CREATE:
        if caller.role in CUSTOMER_ROLES:
            return ALLOW
        return deny("Only customers can place orders")
    if order is None:
        # Listing: results are scoped to the caller by the query itself
        if action is Action.READ:
            return ALLOW
        return deny("An order is required for this action")
    if action is Action.READ:
        if caller.id in (order.user_id, order.seller_id):
            return ALLOW
        return deny("Orders are visible only to their buyer and seller")
    if action is Action.CANCEL:
        if caller.id in (order.user_id, order.seller_id):
            return ALLOW
        return deny("Only the buyer or seller can cancel this order")
    if action is Action.CONFIRM:
        if caller.id == order.seller_id:
            return ALLOW
        return deny("Only the seller can confirm this order")
    return deny(f"Action {action.value} is not supported on orders")


def enforce(caller: Caller, action: Action, kind: str, resource: Any = None) -> None:
    decision = authorize(caller, action, kind, resource)
    if not decision.allowed:
        raise AuthorizationError(decision.reason)


def owner_fields(caller: Caller, kind: str) -> Dict[str, str]:
    """Owner attributes for a resource the caller creates."""
    if kind == "product":
        return {"seller_id": caller.id}
    if kind == "order":
        return {"user_id": caller.id}
    return {}
