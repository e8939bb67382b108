"""Container Service for Docker integration."""

import asyncio
import functools
import logging
from typing import Any, Callable, List, Optional

import requests
from docker.errors import DockerException
from pydantic import ValidationError

from ..models.containers import (
    BYTES_PER_MB,
    ContainerStats,
    ContainerSummary,
    RawStats,
    UpdateResult,
)
from .docker_session import DockerSession
from .errors import (
    DecodeError,
    NetworkInterfaceNotFoundError,
    translate_docker_error,
)
from .recreate import STRATEGY_RENAME, RecreateWorkflow, UpdateGuard

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT_SECONDS = 10
DEFAULT_STATS_INTERFACE = "eth0"


class ContainerService:
    """
    Manages Docker container lifecycle operations on one daemon.

    Responsibilities:
    - List all containers
    - Fetch point-in-time resource statistics
    - Start, stop and delete containers
    - Update a container to the latest image (recreate workflow)

    Every call is a blocking round trip to the daemon and is run in the default
    executor, so concurrent requests do not stall each other.
    """

    def __init__(
        self,
        session: DockerSession,
        *,
        stop_timeout: int = DEFAULT_STOP_TIMEOUT_SECONDS,
        stats_interface: str = DEFAULT_STATS_INTERFACE,
        include_size: bool = True,
        update_strategy: str = STRATEGY_RENAME,
        update_guard: Optional[UpdateGuard] = None,
    ):
        """
        Initialize the Container Service.

        Args:
            session: Connected DockerSession (see ``docker_session.connect``)
            stop_timeout: Grace period in seconds before a stopping container is killed
            stats_interface: Network interface reported by ``get_stats``
            include_size: Ask the daemon for SizeRw / SizeRootFs when listing
            update_strategy: ``rename`` or ``create_first`` (see RecreateWorkflow)
            update_guard: Shared single-flight guard for updates
        """
        self._session = session
        self.stop_timeout = stop_timeout
        self.stats_interface = stats_interface
        self.include_size = include_size
        self._workflow = RecreateWorkflow(
            session,
            stop_timeout=stop_timeout,
            strategy=update_strategy,
            guard=update_guard,
        )

    @property
    def session(self) -> DockerSession:
        return self._session

    async def _call(
        self,
        operation: str,
        container_id: Optional[str],
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run a blocking SDK call in the executor and translate its errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except (DockerException, requests.exceptions.RequestException) as e:
            error = translate_docker_error(e, operation=operation, container_id=container_id)
            logger.warning("%s", error)
            raise error from e

    async def list_containers(self) -> List[ContainerSummary]:
        """
        List all Docker containers, including stopped ones.

        Returns:
            List of ContainerSummary objects, in the order the daemon returned them

        Raises:
            ContainerError: If the daemon call fails
        """
        summaries = await self._call(
            "list",
            None,
            self._session.api.containers,
            all=True,
            size=self.include_size,
        )
        results: List[ContainerSummary] = []
        for summary in summaries or []:
            try:
                results.append(ContainerSummary.from_api(summary))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(
                    "コンテナ情報の解析に失敗しました (Id=%s): %s",
                    summary.get("Id") if isinstance(summary, dict) else "unknown",
                    e,
                )
        return results

    async def get_stats(self, container_id: str) -> ContainerStats:
        """
        Fetch a single (non-streaming) stats snapshot of a container.

        Args:
            container_id: Container ID or name

        Returns:
            ContainerStats with CPU%, memory and network counters in MB

        Raises:
            ContainerNotFoundError: If the container does not exist
            DecodeError: If the stats body is malformed
            NetworkInterfaceNotFoundError: If the configured interface is absent
        """
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(
                None, lambda: self._session.api.stats(container_id, stream=False)
            )
        except ValueError as e:
            # requests の JSONDecodeError も ValueError のサブクラス
            raise DecodeError(
                f"Failed to decode stats for container {container_id}: {e}",
                operation="stats",
                container_id=container_id,
            ) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise translate_docker_error(e, operation="stats", container_id=container_id) from e

        if not isinstance(raw, dict):
            raise DecodeError(
                f"Failed to decode stats for container {container_id}: expected an object",
                operation="stats",
                container_id=container_id,
            )
        try:
            stats = RawStats.model_validate(raw)
        except ValidationError as e:
            raise DecodeError(
                f"Failed to decode stats for container {container_id}: {e}",
                operation="stats",
                container_id=container_id,
            ) from e

        networks = stats.networks or {}
        counters = networks.get(self.stats_interface)
        if counters is None:
            raise NetworkInterfaceNotFoundError(
                self.stats_interface, sorted(networks), container_id=container_id
            )

        return ContainerStats(
            container_id=container_id,
            cpu_percent=stats.cpu_percent(),
            memory_usage_mb=stats.memory_stats.usage / BYTES_PER_MB,
            memory_limit_mb=stats.memory_stats.limit / BYTES_PER_MB,
            network_interface=self.stats_interface,
            network_rx_mb=counters.rx_bytes / BYTES_PER_MB,
            network_tx_mb=counters.tx_bytes / BYTES_PER_MB,
        )

    async def start_container(self, container_id: str) -> None:
        """
        Start a container. Starting a running container is left to the daemon.

        Raises:
            ContainerNotFoundError: If the container does not exist
            ContainerError: If the daemon rejects the start
        """
        await self._call("start", container_id, self._session.api.start, container_id)
        logger.info("Container started: %s", container_id)

    async def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        """
        Stop a running container.

        Args:
            container_id: Container ID or name
            timeout: Seconds to wait before killing the container
                (defaults to the service's stop timeout)

        Raises:
            ContainerNotFoundError: If the container does not exist
            ContainerError: If the daemon rejects the stop
        """
        grace = self.stop_timeout if timeout is None else timeout
        await self._call("stop", container_id, self._session.api.stop, container_id, timeout=grace)
        logger.info("Container stopped: %s (grace period %ss)", container_id, grace)

    async def delete_container(self, container_id: str) -> None:
        """
        Force-remove a container, running or not.

        Raises:
            ContainerNotFoundError: If the container does not exist
            ContainerConflictError: If the daemon reports a conflict (e.g. removal in progress)
        """
        await self._call(
            "delete", container_id, self._session.api.remove_container, container_id, force=True
        )
        logger.info("Container deleted: %s", container_id)

    async def update_container(self, container_id: str) -> UpdateResult:
        """
        Recreate a container from the latest content of its image reference.

        The replacement keeps the name, configuration, mounts and network
        attachments of the original. See RecreateWorkflow for phase semantics.

        Raises:
            ContainerNotFoundError: If the container does not exist (nothing changed)
            ContainerConflictError: If an update of the same container is running
            UpdatePhaseError: If pull, create, start or remove failed
        """
        return await self._workflow.run(container_id)

    def close(self) -> None:
        """Close the Docker session."""
        self._session.close()
