from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hmarket.engine import TransitionRequest
from hmarket.models import Actor, Address, DeliveryMode, DeliveryStatus, ItemDraft, OrderStatus, PaymentMethod, Role
from hmarket.routes.deps import get_actor, get_service, order_payload, require_role
from hmarket.service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


class PlaceOrderBody(BaseModel):
    items: list[ItemDraft] = Field(..., description="Cart lines")
    address: Address = Field(..., description="Delivery address")
    delivery_mode: DeliveryMode = Field(default=DeliveryMode.EXPRESS)
    payment_method: PaymentMethod = Field(default=PaymentMethod.STRIPE)
    discounts: Decimal = Field(default=Decimal("0"))
    notes: str | None = None


class CancelBody(BaseModel):
    note: str | None = None


@router.post("")
async def place_order(
    body: PlaceOrderBody,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    """Checkout: price the cart and create a pending order."""
    require_role(actor, Role.CLIENT)
    order = await service.place_order(
        actor.actor_id,
        body.items,
        body.address,
        body.delivery_mode,
        payment_method=body.payment_method,
        discounts=body.discounts,
        notes=body.notes,
    )
    return JSONResponse(status_code=201, content={"status": "created", "order": order_payload(order, actor)})


@router.get("")
async def list_orders(
    order_status: OrderStatus | None = None,
    delivery_status: DeliveryStatus | None = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    """Own orders for clients and drivers, every order for admins."""
    orders = await service.list_orders(actor, order_status, delivery_status)
    return JSONResponse(
        status_code=200,
        content={"orders": [order_payload(o, actor) for o in orders], "count": len(orders)},
    )


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    order = await service.get_order(order_id, actor)
    return JSONResponse(status_code=200, content={"order": order_payload(order, actor)})


@router.post("/{order_id}/transition")
async def transition(
    order_id: str,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    """Move order and/or delivery status. Rejections name the offending transition."""
    order = await service.advance(order_id, actor, body)
    return JSONResponse(status_code=200, content={"status": "ok", "order": order_payload(order, actor)})


@router.post("/{order_id}/cancel")
async def cancel(
    order_id: str,
    body: CancelBody | None = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    order = await service.cancel(order_id, actor, body.note if body else None)
    return JSONResponse(status_code=200, content={"status": "cancelled", "order": order_payload(order, actor)})


@router.get("/{order_id}/tracking")
async def tracking(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    view = await service.get_tracking(order_id, actor)
    return JSONResponse(status_code=200, content={"tracking": view.model_dump(mode="json")})


@router.post("/{order_id}/pay")
async def pay(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    order = await service.pay(order_id, actor)
    return JSONResponse(
        status_code=200,
        content={"status": order.payment.status.value, "order": order_payload(order, actor)},
    )
