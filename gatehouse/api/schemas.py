from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from gatehouse.logging import get_correlation_id


class ErrorBody(BaseModel):
    """Error envelope body with a stable, client-branchable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """Response envelope shared by successes and errors."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class CredentialResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: str
    refresh_expires_at: str


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    name: Optional[str] = Field(None, max_length=200)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)


class RefreshRequest(BaseModel):
    # Optional when the refresh cookie is sent instead
    refresh_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class CreateUserRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    name: Optional[str] = Field(None, max_length=200)
    role: str = "user"
    is_active: bool = True


class UpdateUserRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=254)
    name: Optional[str] = Field(None, max_length=200)
    role: Optional[str] = None


class RoleRequest(BaseModel):
    role: str
