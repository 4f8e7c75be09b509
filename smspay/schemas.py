"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the poll and callback bodies
- Response models for API responses
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class PollRequest(BaseModel):
    """
    Fields the client posts on every poll tick.

    Field names follow the form the client renders: Body, PhoneTo, Address,
    Amount.
    """
    body: str = Field(..., alias="Body", min_length=1, max_length=1600)
    phone_to: str = Field(..., alias="PhoneTo", min_length=1)
    address: str = Field(..., alias="Address", min_length=1, max_length=128)
    amount: Optional[Decimal] = Field(None, alias="Amount", ge=Decimal("0"))

    @field_validator("phone_to")
    @classmethod
    def normalize_phone(cls, v: str) -> str:
        """Drop the spaces the form placeholder suggests (+64 12 123 4567)."""
        v = "".join(v.split())
        if not v.startswith("+"):
            raise ValueError("PhoneTo must start with '+'")
        if not v[1:].isdigit() or len(v) < 2:
            raise ValueError("PhoneTo must contain only digits after '+'")
        return v

    @field_validator("address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Address must not be blank")
        return v

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "Body": "Hello",
                    "PhoneTo": "+64121234567",
                    "Address": "mvYwMT3aZ5jNcRNNjv7ckxjbqMDtvQbAHz",
                    "Amount": "0.00000750",
                }
            ]
        }
    }


class CarrierCallback(BaseModel):
    """Twilio status callback form. SmsSid is the legacy name of MessageSid."""
    message_status: Optional[str] = Field(None, alias="MessageStatus")
    message_sid: Optional[str] = Field(None, alias="MessageSid")
    sms_sid: Optional[str] = Field(None, alias="SmsSid")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def carrier_message_id(self) -> Optional[str]:
        return self.message_sid or self.sms_sid


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class InvoiceResponse(BaseModel):
    """Payment details for a new session."""
    address: str = Field(..., description="One-time payment address")
    amount: str = Field(..., description="Price of one message, in whole coins")
    currency: str = Field(..., description="Currency name")
    iso_code: str = Field(..., description="ISO 4217 style currency code")
    uri: str = Field(..., description="Wallet deep link for the payment")
    min_confirmations: int = Field(..., ge=1, description="Confirmations required before sending")


class SessionResponse(BaseModel):
    """Read-only view of a payment message record."""
    session_id: str
    address: str
    currency: str
    amount: str
    recipient_phone: str
    payment_status: str
    message_status: str
    carrier_message_id: Optional[str] = None
    carrier_status: Optional[str] = None
    subscribed: bool
    dispatch_claimed: bool
    created_at: str
    updated_at: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
