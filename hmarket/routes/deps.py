from fastapi import Header, Request

from hmarket.errors import PermissionDeniedError
from hmarket.models import Actor, Order, Role
from hmarket.service import OrderService


def get_service(request: Request) -> OrderService:
    return request.app.state.service


def get_actor(request: Request, authorization: str | None = Header(default=None)) -> Actor:
    """Bearer token -> Actor. Raises UnauthenticatedError (401)."""
    return request.app.state.auth.identify(authorization)


def require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise PermissionDeniedError(f"reserved for: {allowed}")


def order_payload(order: Order, actor: Actor) -> dict:
    """JSON view of an order. Drivers never see the handoff code; the customer gives it to them."""
    payload = order.model_dump(mode="json")
    if actor.role is Role.LIVREUR:
        payload["delivery"]["delivery_code"] = None
    return payload
