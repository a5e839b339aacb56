from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hmarket.models import Actor, Location, Role
from hmarket.routes.deps import get_actor, get_service, order_payload, require_role
from hmarket.service import OrderService

router = APIRouter(prefix="/delivery", tags=["delivery"])


class AcceptBody(BaseModel):
    order_id: str = Field(..., description="Order the driver wants to deliver")


class LocationBody(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str | None = None
    order_id: str | None = Field(default=None, description="Order in delivery; its tracking gets the position too")


@router.post("/accept")
async def accept(
    body: AcceptBody,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    """
    Claim an order. Exactly one of several drivers racing for the same order wins;
    the others get 409 already_assigned.
    """
    require_role(actor, Role.LIVREUR)
    order = await service.accept_delivery(body.order_id, actor.actor_id)
    return JSONResponse(status_code=200, content={"status": "assigned", "order": order_payload(order, actor)})


@router.get("/available-orders")
async def available_orders(
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    orders = await service.list_available(actor)
    return JSONResponse(
        status_code=200,
        content={"orders": [order_payload(o, actor) for o in orders], "count": len(orders)},
    )


@router.get("/my-deliveries")
async def my_deliveries(
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    require_role(actor, Role.LIVREUR)
    orders = await service.list_my_orders(actor)
    return JSONResponse(
        status_code=200,
        content={"orders": [order_payload(o, actor) for o in orders], "count": len(orders)},
    )


@router.post("/update-location")
async def update_location(
    body: LocationBody,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    location = Location(lat=body.lat, lng=body.lng, address=body.address)
    order = await service.update_driver_location(actor, location, body.order_id)
    content: dict = {"status": "ok", "location": location.model_dump()}
    if order is not None:
        content["order"] = order_payload(order, actor)
    return JSONResponse(status_code=200, content=content)


@router.get("/stats")
async def stats(
    driver_id: str | None = None,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    """Driver dashboard: today's deliveries and revenue, completed count, active deliveries."""
    driver_stats = await service.driver_stats(actor, driver_id)
    return JSONResponse(status_code=200, content={"stats": driver_stats.model_dump(mode="json")})
