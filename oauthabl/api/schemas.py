from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oauthabl.logging import get_correlation_id
from oauthabl.storage.models import ArchiveResult, Client, Session, User

MAX_IDENTIFIER_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024
MAX_CODE_LENGTH = 64

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
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


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    # Addresses are index keys, so they are stored as given apart from NFKC and trimming
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > MAX_IDENTIFIER_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.rpartition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    """Usernames: letters, digits, dot, underscore, hyphen; at most 64 chars."""
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if not value:
        raise ValueError("username must be at least 1 character")
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, dots, underscores, and hyphens"
        )
    return value


def _validate_identifier(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not value:
        raise ValueError("identifier must not be empty")
    return value


# -- clients -----------------------------------------------------------------


class ClientCreateRequest(BaseModel):
    """Registry entry for a tenant application; unknown fields become attributes."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def _reject_reserved(self):
        for reserved in ("id", "secret"):
            if reserved in (self.model_extra or {}):
                raise ValueError(f"{reserved} is assigned server-side and cannot be provided")
        return self


class ClientUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = Field(default=None, min_length=1, max_length=128)

    def changes(self) -> Dict[str, Any]:
        changes = dict(self.model_extra or {})
        if self.name is not None:
            changes["name"] = self.name
        return changes


class ClientResponse(BaseModel):
    id: str
    name: str
    secret: str
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_client(cls, client: Client) -> "ClientResponse":
        return cls(
            id=client.id,
            name=client.name,
            secret=client.secret,
            attributes=dict(client.attributes),
        )


# -- users -------------------------------------------------------------------


class RegisterRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    verify_email: bool = False

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @model_validator(mode="after")
    def _require_identifier(self):
        if not self.username and not self.email:
            raise ValueError("username or email is required")
        if self.verify_email and not self.email:
            raise ValueError("email is required when verify_email is set")
        return self


class UserResponse(BaseModel):
    id: str
    username: Optional[str] = None
    email_addresses: List[str] = Field(default_factory=list)
    email_verified: bool = False
    sessions: Optional[int] = None

    @classmethod
    def from_user(cls, user: User, sessions: Optional[int] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email_addresses=list(user.email_addresses),
            email_verified=user.email_verified,
            sessions=sessions,
        )


class SessionResponse(BaseModel):
    id: str
    user_id: str
    created_at: datetime
    last_used_at: datetime
    rotations: Optional[int] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            rotations=session.rotations,
        )


class ArchiveResponse(BaseModel):
    archived: int
    failed: int
    complete: bool

    @classmethod
    def from_result(cls, result: ArchiveResult) -> "ArchiveResponse":
        return cls(archived=result.archived, failed=result.failed, complete=result.complete)


class RegistrationResponse(BaseModel):
    user: UserResponse
    session: Optional[SessionResponse] = None
    code: Optional[str] = None


class UserDeletionResponse(BaseModel):
    user_id: str
    sessions: ArchiveResponse


class CredentialChangeResponse(BaseModel):
    session: SessionResponse
    revoked: ArchiveResponse


# -- flows -------------------------------------------------------------------


class LoginRequest(BaseModel):
    identifier: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _validate_login_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class EmailVerificationRequest(BaseModel):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendEmailVerificationRequest(BaseModel):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordRequest(BaseModel):
    identifier: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _validate_forgot_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class ResetPasswordRequest(BaseModel):
    identifier: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _validate_reset_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class CodeIssuedResponse(BaseModel):
    """Code for the tenant application to deliver; null when nothing was issued."""

    code: Optional[str] = None
