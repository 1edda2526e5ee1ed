"""
Pydantic models for API responses and documentation.
"""

from typing import Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Envelope for every error response."""

    error: str = Field(..., description="Human readable message")
    code: Optional[str] = Field(None, description="Machine readable error code")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Cancellation window has expired",
                "code": "window_expired",
            }
        }


class CheckoutSessionResponse(BaseModel):
    id: str = Field(..., description="Stripe checkout session id")
    url: Optional[str] = Field(None, description="Hosted checkout redirect URL")
    order_id: str = Field(..., description="Order id embedded in the session metadata")


class CancelOrderResponse(BaseModel):
    success: bool = True


class CancelWindowResponse(BaseModel):
    order_id: str
    created_at: str
    now: str
    elapsed_seconds: int
    window_minutes: int = Field(..., description="Length of the buyer cancel window")
    can_cancel: bool
    can_ship: bool


class WebhookAck(BaseModel):
    received: bool = True
