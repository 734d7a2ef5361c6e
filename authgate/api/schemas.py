from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_error",
    "account_locked",
    "account_inactive",
    "invalid_credentials",
    "invalid_2fa_token",
    "invalid_pending_session",
    "two_factor_invalid",
    "two_factor_not_configured",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class DeviceInfoModel(BaseModel):
    user_agent: Optional[str] = Field(default=None, max_length=512, alias="userAgent")
    screen: Optional[str] = Field(default=None, max_length=32)
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=35)

    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)
    device_info: Optional[DeviceInfoModel] = None
    attempt_id: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Client-chosen id; a retried request with the same id counts as one attempt",
    )

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenPayload(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime


class LoginResponse(BaseModel):
    user_id: str
    state: str
    requires_2fa: bool = False
    requires_2fa_setup: bool = False
    session_id: Optional[str] = None
    pending_token: Optional[str] = None
    tokens: Optional[TokenPayload] = None


class TwoFactorVerifyRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    token: str = Field(..., min_length=1, max_length=32)
    pending_token: str = Field(..., max_length=4096)
    device_info: Optional[DeviceInfoModel] = None


class TwoFactorVerifyResponse(BaseModel):
    success: bool
    state: str
    session_id: Optional[str] = None
    tokens: Optional[TokenPayload] = None


class TwoFactorSetupResponse(BaseModel):
    secret: str
    qr_payload: str
    manual_entry_key: str
    backup_codes: List[str]


class TwoFactorEnableRequest(BaseModel):
    token: str = Field(..., min_length=6, max_length=6, description="Current code from the authenticator")


class TwoFactorDisableRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether 2FA is enforced at sign-in")
    configured: bool = Field(..., description="Whether a credential exists, verified or pending")
    backup_codes_remaining: int


class SessionTerminateRequest(BaseModel):
    reason: str = Field(default="manual_logout", max_length=64)


class SessionValidateRequest(BaseModel):
    session_id: str = Field(..., max_length=128)


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
