from __future__ import annotations

import re
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from otpauth.logging import get_correlation_id
from otpauth.storage.models import Admin, User

# E.164: leading +, no leading zero, 7 to 15 digits
PHONE_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "user_disabled",
    "otp_throttled",
    "otp_rate_exceeded",
    "session_not_found",
    "invalid_code",
    "session_corrupted",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RequestOtpRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field(..., max_length=16)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        value = value.strip()
        if not PHONE_PATTERN.match(value):
            raise ValueError("phone_number must be in E.164 format, e.g. +15551234567")
        return value


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=6, max_length=6)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()


class AdminLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1, max_length=1024)


class TokenResponse(BaseModel):
    token: str


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: str = Field("", max_length=100)
    last_name: str = Field("", max_length=100)


class UpdateUserStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal[1, 2]


class UserResponse(BaseModel):
    id: int
    phone_number: str
    first_name: str
    last_name: str
    status: int

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            phone_number=user.phone_number,
            first_name=user.first_name,
            last_name=user.last_name,
            status=int(user.status),
        )


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int


class AdminProfileResponse(BaseModel):
    id: int
    username: str
    role: str

    @classmethod
    def from_model(cls, admin: Admin) -> "AdminProfileResponse":
        return cls(id=admin.id, username=admin.username, role=admin.role.label)
