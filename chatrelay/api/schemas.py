from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_MESSAGE_LENGTH = 32768
MAX_SYSTEM_ROLE_LENGTH = 4096

_VALID_ERROR_CODES = {
    "validation_error",
    "duplicate_user",
    "invalid_credentials",
    "unauthorized",
    "forbidden",
    "not_found",
    "store_error",
    "upstream_error",
    "server_error",
}


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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be blank")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=256)
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _require_text(value).strip()

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _require_text(value)


class LoginRequest(BaseModel):
    # no format check here so a malformed email fails like any unknown one
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)

    @field_validator("email", "password")
    @classmethod
    def _validate_present(cls, value: str) -> str:
        return _require_text(value)


class CredentialResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user_id: str


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    system_role: str
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]
    count: int


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    system_role: Optional[str] = Field(
        default=None, alias="systemRole", max_length=MAX_SYSTEM_ROLE_LENGTH
    )

    @field_validator("message")
    @classmethod
    def _validate_message(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("system_role")
    @classmethod
    def _blank_role_is_unset(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class ChatResponse(BaseModel):
    reply: str
