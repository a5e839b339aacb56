import hmac

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hmarket.errors import UnauthenticatedError
from hmarket.payments import Charge, ChargeOutcome
from hmarket.routes.deps import get_service
from hmarket.service import OrderService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class PaymentEventBody(BaseModel):
    order_id: str = Field(..., description="Order the payment belongs to")
    outcome: ChargeOutcome = Field(..., description="succeeded | failed")
    reference: str | None = Field(default=None, description="Provider payment id")


@router.post("/payment")
async def payment_event(
    body: PaymentEventBody,
    request: Request,
    x_webhook_secret: str | None = Header(default=None),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    """
    Payment provider callback. Idempotent: replaying a recorded success returns 200
    and changes nothing.
    """
    expected = request.app.state.webhook_secret
    if not expected:
        raise UnauthenticatedError("payment webhook is disabled: PAYMENT_WEBHOOK_SECRET is not set")
    if not hmac.compare_digest(x_webhook_secret or "", expected):
        raise UnauthenticatedError("invalid webhook secret")
    order = await service.record_payment(body.order_id, Charge(outcome=body.outcome, reference=body.reference))
    return JSONResponse(
        status_code=200,
        content={
            "status": "recorded",
            "order_id": order.id,
            "payment_status": order.payment.status.value,
            "order_status": order.order_status.value,
        },
    )
