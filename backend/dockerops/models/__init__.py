# Data models package

from .auth import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RegisterRequest,
    RegisterResponse,
    Session,
)
from .containers import (
    ContainerSnapshot,
    ContainerStats,
    ContainerSummary,
    UpdateResult,
)

__all__ = [
    "ContainerSnapshot",
    "ContainerStats",
    "ContainerSummary",
    "LoginRequest",
    "LoginResponse",
    "LogoutResponse",
    "RegisterRequest",
    "RegisterResponse",
    "Session",
    "UpdateResult",
]
