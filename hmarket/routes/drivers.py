from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hmarket.models import Actor
from hmarket.routes.deps import get_actor, get_service
from hmarket.service import OrderService

router = APIRouter(prefix="/drivers", tags=["drivers"])


class AvailabilityBody(BaseModel):
    available: bool = Field(..., description="Whether the driver accepts new orders")


@router.put("/{driver_id}/availability")
async def set_availability(
    driver_id: str,
    body: AvailabilityBody,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    await service.set_driver_availability(actor, driver_id, body.available)
    return JSONResponse(status_code=200, content={"driver_id": driver_id, "available": body.available})
