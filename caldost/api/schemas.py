from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Stable error codes rendered in the error envelope
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE = re.compile(r"^\+?[0-9][0-9 -]{6,18}[0-9]$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email address")
    return normalized


def _validate_phone(value: str) -> str:
    stripped = value.strip()
    if not _PHONE.match(stripped):
        raise ValueError("invalid phone number")
    return stripped


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class _PhoneModel(BaseModel):
    phone_number: str

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        return _validate_phone(value)


class CredentialsRequest(_EmailModel):
    password: str = Field(..., min_length=1, max_length=128)


class EmailOtpVerifyRequest(_EmailModel):
    otp: str = Field(..., min_length=1, max_length=10)


class PhoneOtpRequest(_PhoneModel):
    pass


class PhoneOtpVerifyRequest(_PhoneModel):
    otp: str = Field(..., min_length=1, max_length=10)


class EmailOtpRequest(_EmailModel):
    pass


class PasswordResetConfirm(_EmailModel):
    otp: str = Field(..., min_length=1, max_length=10)
    new_password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class DistrictCreateRequest(BaseModel):
    district_code_alpha: str = Field(..., max_length=5)
    district_name: str = Field(..., min_length=1, max_length=128)


class DistrictResponse(BaseModel):
    district_code_alpha: str
    district_code_numeric: int
    district_name: str
    assigned_admin_public_user_ids: List[str] = Field(default_factory=list)


class AdminCreateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=254)
    district_code_alpha: Optional[str] = Field(default=None, max_length=5)
    password: Optional[str] = Field(default=None, max_length=128)
    phone_number: Optional[str] = Field(default=None, max_length=20)
    post: Optional[str] = Field(default=None, max_length=128)


class AdminResponse(BaseModel):
    public_user_id: str
    name: str
    email: str
    district_code_alpha: str
    phone_number: Optional[str] = None
    post: Optional[str] = None
    is_active: bool = True
    role: str = "ADMIN"


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    key_prefix: str
    is_active: bool
    usage_count: int
    last_used_at: Optional[str] = None
    created_at: str
    api_key: Optional[str] = Field(
        default=None, description="Raw key, only present in the creation response"
    )


class ComplaintCreateRequest(BaseModel):
    """Complaint intake payload shared by both domains.

    Fields that do not belong to the target domain are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    district: Optional[str] = Field(default=None, max_length=128)
    complaint_title: Optional[str] = Field(default=None, max_length=256)
    complaint_description: Optional[str] = Field(default=None, max_length=10000)
    is_anonymous: Union[bool, str] = False
    complainant_name: Optional[str] = Field(default=None, max_length=128)
    complainant_phone: Optional[str] = Field(default=None, max_length=20)
    complainant_email: Optional[str] = Field(default=None, max_length=254)
    priority_level: Optional[str] = Field(default=None, max_length=16)
    block: Optional[str] = Field(default=None, max_length=128)
    panchayat: Optional[str] = Field(default=None, max_length=128)
    village: Optional[str] = Field(default=None, max_length=128)
    institution_name: Optional[str] = Field(default=None, max_length=256)
    institution_code: Optional[str] = Field(default=None, max_length=64)
    institution_type: Optional[str] = Field(default=None, max_length=64)
    facility_name: Optional[str] = Field(default=None, max_length=256)
    facility_type: Optional[str] = Field(default=None, max_length=64)
    mentioned_persons: Optional[List[Any]] = Field(default=None, max_length=50)


class ComplaintCreatedResponse(BaseModel):
    complaint_number: str
    current_status: str
    created_at: str
    access_link_issued: bool = False


class CloseComplaintRequest(BaseModel):
    final_status: Optional[str] = Field(default=None, max_length=16)
    final_resolution_note: Optional[str] = Field(default=None, max_length=10000)


class CloseComplaintResponse(BaseModel):
    complaint_number: str
    current_status: str
    complaint_end_at: Optional[str] = None
    resolution_details: dict
