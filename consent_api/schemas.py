"""
Pydantic schemas for request/response validation.

This module contains:
- Request models: the constraint set checked before any store access
- Response models for API responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


CONTACT_ID_PATTERN = r"^[A-Za-z0-9]+$"


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ContactCreateRequest(BaseModel):
    """
    Body of POST /api/contacts.

    Validates:
    - phone_number: string, 5-20 characters after trimming
    """
    phone_number: str = Field(
        ...,
        min_length=5,
        max_length=20,
        description="Contact phone number, e.g. +15550001"
    )

    model_config = {
        "str_strip_whitespace": True,
        "json_schema_extra": {"examples": [{"phone_number": "+15550001"}]},
    }


class ContactRef(BaseModel):
    """Body of the preference transitions: a single contact reference."""
    contact_id: str = Field(
        ...,
        min_length=1,
        max_length=32,
        pattern=CONTACT_ID_PATTERN,
        description="Identifier returned by POST /api/contacts"
    )

    model_config = {"str_strip_whitespace": True}


class MessageLogRequest(BaseModel):
    """
    Body of POST /api/messages.

    Validates:
    - contact_id: alphanumeric identifier
    - message_in: required, non-empty after trimming
    - message_out: optional, trimmed
    """
    contact_id: str = Field(
        ...,
        min_length=1,
        max_length=32,
        pattern=CONTACT_ID_PATTERN,
        description="Identifier of the contact the messages belong to"
    )
    message_in: str = Field(
        ...,
        min_length=1,
        max_length=4096,
        description="Inbound message text"
    )
    message_out: Optional[str] = Field(
        None,
        max_length=4096,
        description="Reply sent for the inbound message"
    )

    model_config = {"str_strip_whitespace": True}


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Error body: machine-readable kind plus a safe description."""
    error: str = Field(..., description="Error kind")
    detail: str | list = Field(..., description="Error description")


class SuccessResponse(BaseModel):
    success: bool = True


class ContactCreateResponse(BaseModel):
    success: bool = True
    id: str = Field(..., description="Contact identifier")
    existed: bool = Field(..., description="True when the phone number was already registered")


class ContactResponse(BaseModel):
    id: str
    phone_number: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ContactLookupResponse(BaseModel):
    """Lookup envelope; data is null when the number is unknown."""
    data: Optional[ContactResponse] = None


class MessageLogResponse(BaseModel):
    success: bool = True
    id: str = Field(..., description="Message log entry identifier")


class PreferenceResponse(BaseModel):
    """Stored preference record of a contact."""
    id: str
    contact_id: str
    has_opted_in: bool
    awaiting_optin: bool
    intro_sent_today: bool
    opted_in_at: Optional[datetime] = None
    opted_out_at: Optional[datetime] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class ResetResponse(BaseModel):
    success: bool = True
    affected_count: int = Field(..., ge=0, description="Preference rows changed")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    message: Optional[str] = Field(None, description="Human readable status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
