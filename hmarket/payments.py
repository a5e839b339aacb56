"""Payment capability. Provider protocol details stay behind the gateway."""
from decimal import Decimal
from enum import Enum
from typing import Protocol

from pydantic import BaseModel


class ChargeOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Charge(BaseModel):
    outcome: ChargeOutcome
    reference: str | None = None  # provider id (e.g. payment intent)


class PaymentGateway(Protocol):
    async def charge(self, order_id: str, amount: Decimal, currency: str) -> Charge: ...
