"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for dashboard and admin endpoints
- Response models for API responses

Dashboard-facing JSON uses camelCase keys, so models declare a camelCase
alias generator and accept snake_case names too.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        coerce_numbers_to_str=True,
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(CamelModel):
    """
    Body of POST /messages/send.

    Fields are optional at the schema level so that a missing field is
    reported as a 400 naming it, not as a generic validation error.
    """
    tenant_id: Optional[str] = Field(None, description="Tenant sending the message")
    to: Optional[str] = Field(None, description="Recipient WhatsApp id / phone number")
    message: Optional[str] = Field(None, description="Text body to send")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"tenantId": "0b0f8c1e-8c1d-4c59-a1a4-4a4b5b8f1d11", "to": "2348000000000", "message": "Hello"}
            ]
        }
    )


class ManualConnectRequest(CamelModel):
    name: Optional[str] = None
    waba_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    access_token: Optional[str] = None
    is_test: Optional[bool] = None


class ManualVerifyRequest(CamelModel):
    tenant_id: Optional[str] = None
    waba_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    access_token: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class TenantResponse(CamelModel):
    """Safe projection of a tenant: the access token is never included."""
    id: str
    name: str
    phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None
    waba_id: str
    is_test: bool = False
    plan_type: str = "free"
    created_at: Optional[datetime] = None


class MessageResponse(CamelModel):
    id: str
    tenant_id: str
    from_address: Optional[str] = Field(None, alias="from", serialization_alias="from")
    to_address: Optional[str] = Field(None, alias="to", serialization_alias="to")
    message: Optional[str] = None
    direction: str
    wa_message_id: Optional[str] = None
    wa_type: Optional[str] = None
    profile_name: Optional[str] = None
    status: str
    timestamp: datetime
    conversation: Optional[Dict[str, Any]] = None
    pricing: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class TenantEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    tenant: TenantResponse


class TenantsListResponse(CamelModel):
    success: bool = True
    tenants: List[TenantResponse] = Field(default_factory=list)


class MessagesListResponse(CamelModel):
    success: bool = True
    messages: List[MessageResponse] = Field(default_factory=list)


class SendMessageResponse(CamelModel):
    success: bool = True
    data: Dict[str, Any] = Field(default_factory=dict, description="Graph API send response")


class VerifyReport(BaseModel):
    """
    Result of POST /manual/verify.

    checks holds one key per diagnostic (scopes, waba, phone_number,
    waba_phone_numbers) or its *_error counterpart.
    """
    success: bool
    checks: Dict[str, Any] = Field(default_factory=dict)
    hints: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: Any = Field(..., description="Error description or platform error detail")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    signature_checks: Optional[bool] = Field(None, description="False when webhook signatures are not verified")
