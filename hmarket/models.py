"""
Order domain models. Statuses are closed enums; the transition tables in
hmarket.order_state decide how they move.
"""
from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CLIENT = "client"
    LIVREUR = "livreur"
    ADMIN = "admin"
    VENDEUR = "vendeur"
    # Internal: entries written by the payment path. Never issued in a credential.
    SYSTEM = "system"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryMode(str, Enum):
    PLANNED = "planned"
    EXPRESS = "express"
    OUTSIDE_IDF = "outside_idf"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class ProgressStep(str, Enum):
    PREPARATION = "preparation"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"


class Actor(BaseModel):
    """Authenticated identity making a request."""

    actor_id: str
    role: Role


class Location(BaseModel):
    lat: float
    lng: float
    address: str | None = None


class CurrentLocation(Location):
    updated_at: datetime = Field(default_factory=utcnow)


class Address(BaseModel):
    street: str
    city: str
    postal_code: str
    country: str = "France"


class ItemDraft(BaseModel):
    """Line item as submitted at checkout."""

    product_ref: str
    title: str
    unit_price: Decimal
    quantity: int


class OrderItem(ItemDraft):
    line_total: Decimal


class Totals(BaseModel):
    subtotal: Decimal
    delivery_fee: Decimal
    taxes: Decimal
    discounts: Decimal
    total: Decimal


class Payment(BaseModel):
    method: PaymentMethod = PaymentMethod.STRIPE
    status: PaymentStatus = PaymentStatus.PENDING
    amount: Decimal
    currency: str = "EUR"
    paid_at: datetime | None = None
    reference: str | None = None


class TrackingEntry(BaseModel):
    """One append-only history record. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    status: str
    delivery_status: DeliveryStatus | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    actor_id: str
    actor_role: Role
    notes: str = ""
    location: Location | None = None


class Delivery(BaseModel):
    mode: DeliveryMode = DeliveryMode.EXPRESS
    status: DeliveryStatus = DeliveryStatus.PENDING
    assigned_driver_id: str | None = None
    assigned_at: datetime | None = None
    delivery_code: str = Field(default_factory=lambda: generate_delivery_code())
    estimated_delivery_time: datetime | None = None
    pickup_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    current_location: CurrentLocation | None = None
    tracking_history: list[TrackingEntry] = Field(default_factory=list)


class Progress(BaseModel):
    step: ProgressStep = ProgressStep.PREPARATION
    current_step: int = 1
    total_steps: int = 4


class Order(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_number: str = Field(default_factory=lambda: generate_order_number())
    customer_id: str
    items: list[OrderItem]
    totals: Totals
    payment: Payment
    delivery_address: Address
    delivery: Delivery
    order_status: OrderStatus = OrderStatus.PENDING
    progress: Progress = Field(default_factory=Progress)
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0  # bumped by every successful store write


def generate_order_number(now: datetime | None = None) -> str:
    """HM-YYYYMMDD-NNNN. Collisions are caught by the store's unique index."""
    now = now or utcnow()
    return f"HM-{now:%Y%m%d}-{secrets.randbelow(10000):04d}"


def generate_delivery_code() -> str:
    """Random 6-digit code shown to the customer."""
    return str(100000 + secrets.randbelow(900000))
