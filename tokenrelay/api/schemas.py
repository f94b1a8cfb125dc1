from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, field_validator

from tokenrelay.service.errors import error_types

# Generic codes for bare HTTP statuses plus every service error code
_VALID_ERROR_CODES = frozenset(
    {"unauthorized", "forbidden", "not_found", "validation_error", "conflict", "server_error"}
    | {cls.error_code for cls in error_types()}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Zero-width characters and bidi controls that can make two addresses look alike
_INVISIBLE = frozenset(
    "\u200b\u200c\u200d\ufeff"
    + "".join(chr(c) for c in range(0x202A, 0x202F))
    + "".join(chr(c) for c in range(0x2066, 0x206A))
)
_EMAIL = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}"
    r"@(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)


def normalize_email(value: str) -> str:
    """Canonical form used as the identity lookup key: trimmed, lowercased, NFKC."""
    cleaned = "".join(c for c in value.strip().lower() if c not in _INVISIBLE)
    normalized = unicodedata.normalize("NFKC", cleaned)
    if len(normalized) > 254 or not _EMAIL.match(normalized):
        raise ValueError("invalid email address")
    return normalized


EmailAddress = Annotated[str, AfterValidator(normalize_email)]


class LoginRequest(BaseModel):
    email: EmailAddress
    password: str = Field(..., min_length=1, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user_id: str
    role: str = "user"
    access_expires_at: datetime


class LogoutResponse(BaseModel):
    logged_out: bool = True


class MeResponse(BaseModel):
    user_id: str
    role: str
    expires_at: datetime
