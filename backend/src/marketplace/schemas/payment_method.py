"""Pydantic schemas for saved payment methods."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProcessorPaymentMethod(BaseModel):
    """Card details the backend fetched from the processor for a token."""

    id: str = Field(..., description="Processor token (pm_...)")
    type: str = "card"
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class PaymentMethodRead(BaseModel):
    """Schema for returning payment method data."""

    id: UUID
    user_id: str
    processor_token: str
    type: str
    brand: str | None
    last4: str | None
    exp_month: int | None
    exp_year: int | None
    is_default: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
