# Services package

from .auth import AuthError, AuthService, RegistrationError
from .containers import ContainerService
from .docker_session import DockerSession, connect
from .errors import (
    ContainerConflictError,
    ContainerError,
    ContainerNotFoundError,
    CredentialError,
    DaemonConnectionError,
    DaemonUnreachableError,
    DecodeError,
    NetworkInterfaceNotFoundError,
    UpdatePhaseError,
)

__all__ = [
    "AuthError",
    "AuthService",
    "ContainerConflictError",
    "ContainerError",
    "ContainerNotFoundError",
    "ContainerService",
    "CredentialError",
    "DaemonConnectionError",
    "DaemonUnreachableError",
    "DecodeError",
    "DockerSession",
    "NetworkInterfaceNotFoundError",
    "RegistrationError",
    "UpdatePhaseError",
    "connect",
]
