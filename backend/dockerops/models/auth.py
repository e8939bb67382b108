"""Authentication models."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class RegisterRequest(BaseModel):
    """Operator registration request."""
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(..., min_length=1, max_length=255, alias="firstName")
    last_name: str = Field(..., min_length=1, max_length=255, alias="lastName")
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=255)


class RegisterResponse(BaseModel):
    """Registration response model."""
    message: str = "registration success"
    email: str


class LoginRequest(BaseModel):
    """Login request model."""
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    """Login response model."""
    model_config = ConfigDict(populate_by_name=True)

    token: str
    expires_at: datetime = Field(..., alias="expiresAt")
    email: str


class LogoutResponse(BaseModel):
    """Logout response model."""
    success: bool
    message: str = "Successfully logged out"


class Session(BaseModel):
    """Session model for internal use."""
    token: str
    user_email: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
