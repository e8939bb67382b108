"""Exceptions raised by the Docker session and container services."""

from typing import Optional

import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound


class ContainerError(Exception):
    """
    Base exception for container operation errors.

    Also used directly for daemon-reported failures that do not fit a more
    specific subclass. ``operation`` and ``container_id`` are kept so callers
    can log the failure without parsing the message.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        container_id: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.container_id = container_id
        super().__init__(message)


class CredentialError(ContainerError):
    """TLS クライアント証明書・秘密鍵・CA が欠落または不正な場合の例外。"""


class DaemonConnectionError(ContainerError):
    """TLS ハンドシェイクまたは API バージョンネゴシエーションに失敗した場合の例外。"""


class DaemonUnreachableError(ContainerError):
    """Docker デーモンが ping やリクエストに応答しない場合の例外。"""


class ContainerNotFoundError(ContainerError):
    """Raised when the daemon does not know the container id."""


class ContainerConflictError(ContainerError):
    """Raised when the daemon rejects an operation because of container state."""


class DecodeError(ContainerError):
    """Raised when a daemon response body cannot be decoded."""


class NetworkInterfaceNotFoundError(DecodeError):
    """Stats snapshot does not contain the configured network interface."""

    def __init__(self, interface: str, available: list[str], *, container_id: str) -> None:
        self.interface = interface
        self.available = available
        listed = ", ".join(available) if available else "none"
        super().__init__(
            f"Network interface {interface} not found in stats for container "
            f"{container_id} (available: {listed})",
            operation="stats",
            container_id=container_id,
        )


class UpdatePhaseError(ContainerError):
    """
    Recreate workflow failed after the inspect phase.

    ``phase`` names the failing phase and ``new_container_id`` is set once the
    replacement exists, so an operator can reconcile the runtime state by hand.
    """

    def __init__(
        self,
        phase: str,
        message: str,
        *,
        container_id: str,
        new_container_id: Optional[str] = None,
        cause: Optional[ContainerError] = None,
    ) -> None:
        self.phase = phase
        self.new_container_id = new_container_id
        self.cause = cause
        super().__init__(
            f"Update of container {container_id} failed during {phase} phase: {message}",
            operation="update",
            container_id=container_id,
        )


def translate_docker_error(
    exc: Exception,
    *,
    operation: str,
    container_id: Optional[str] = None,
) -> ContainerError:
    """
    Map a docker SDK / transport exception onto the ContainerError hierarchy.

    The caller is expected to ``raise ... from exc`` with the returned error.
    """
    if isinstance(exc, ContainerError):
        return exc

    target = f"container {container_id}" if container_id else "containers"
    if isinstance(exc, ImageNotFound):
        return ContainerError(
            f"Failed to {operation} {target}: image not found ({exc.explanation or exc})",
            operation=operation,
            container_id=container_id,
        )
    if isinstance(exc, NotFound):
        return ContainerNotFoundError(
            f"Container not found: {container_id}",
            operation=operation,
            container_id=container_id,
        )
    if isinstance(exc, APIError):
        if exc.status_code == 409:
            return ContainerConflictError(
                f"Failed to {operation} {target}: {exc.explanation or exc}",
                operation=operation,
                container_id=container_id,
            )
        return ContainerError(
            f"Failed to {operation} {target}: {exc.explanation or exc}",
            operation=operation,
            container_id=container_id,
        )
    if isinstance(exc, ValueError):
        # requests の JSONDecodeError は RequestException でもあるため先に判定する
        return DecodeError(
            f"Failed to decode the daemon response ({operation} {target}): {exc}",
            operation=operation,
            container_id=container_id,
        )
    if isinstance(exc, requests.exceptions.RequestException):
        # ConnectionError / Timeout / SSLError はデーモンへ到達できていない
        return DaemonUnreachableError(
            f"Docker daemon did not answer while trying to {operation} {target}: {exc}",
            operation=operation,
            container_id=container_id,
        )
    if isinstance(exc, DockerException):
        return ContainerError(
            f"Docker operation failed ({operation} {target}): {exc}",
            operation=operation,
            container_id=container_id,
        )
    return ContainerError(
        f"Unexpected error during {operation} of {target}: {exc}",
        operation=operation,
        container_id=container_id,
    )
