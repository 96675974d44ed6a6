from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nullpass.storage.models import SERVICES

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    # emails are matched exactly as stored, so case is preserved
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email address")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    return value


def _validate_service(value: str) -> str:
    normalized = (value or "").upper()
    if normalized not in SERVICES:
        raise ValueError("Invalid service. Must be DROP, MAILS, VAULT, DB, or BOARD")
    return normalized


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    verification_code: Optional[str] = Field(default=None, alias="verificationCode", max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class PasswordChangeRequest(_CamelModel):
    current_password: str = Field(..., alias="currentPassword", min_length=1)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TwoFactorRequest(_CamelModel):
    enable: bool
    verification_code: Optional[str] = Field(default=None, alias="verificationCode", max_length=10)


class AccountConfirmRequest(_CamelModel):
    password: str = Field(..., min_length=1)
    verification_code: Optional[str] = Field(default=None, alias="verificationCode", max_length=10)


class ServiceRequest(BaseModel):
    service: str

    @field_validator("service")
    @classmethod
    def _validate_service_name(cls, value: str) -> str:
        return _validate_service(value)


class ServiceTierRequest(ServiceRequest):
    tier: str = Field(..., min_length=1, max_length=64)


class EntitlementPatchRequest(_CamelModel):
    """Admin entitlement grant; only the fields sent are applied."""

    service: str
    tier: Optional[str] = Field(default=None, max_length=64)
    is_premium: Optional[bool] = Field(default=None, alias="isPremium")
    access_flags: Optional[Dict[str, Any]] = Field(default=None, alias="accessFlags")
    metadata: Optional[Dict[str, Any]] = None
    custom_storage_limit: Optional[int] = Field(default=None, alias="customStorageLimit")
    custom_api_key_limit: Optional[int] = Field(default=None, alias="customApiKeyLimit")

    @field_validator("service")
    @classmethod
    def _validate_service_name(cls, value: str) -> str:
        return _validate_service(value)

    @field_validator("tier", "is_premium")
    @classmethod
    def _reject_explicit_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("must not be null")
        return value

    def changes(self) -> Dict[str, Any]:
        """Camel-case fields the caller actually set, excluding the service key."""
        return self.model_dump(by_alias=True, exclude_unset=True, exclude={"service"})


class CustomDomainRequest(BaseModel):
    domain: str = Field(..., min_length=1, max_length=255)
