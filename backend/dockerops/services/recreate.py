"""
Recreate workflow used to update a container to the latest image.

Docker cannot swap the image of an existing container, so an update is
inspect -> pull -> create -> start -> remove. Each phase is a separate
executor call: cancelling the calling task takes effect between phases only,
a phase that has been issued runs to completion.
"""

import asyncio
import functools
import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Any, Callable, Iterator, List, Optional, Tuple

import requests
from docker.errors import DockerException

from ..models.containers import ContainerSnapshot, UpdatePhase, UpdateResult
from .docker_session import DockerSession
from .errors import (
    ContainerConflictError,
    ContainerError,
    DecodeError,
    UpdatePhaseError,
    translate_docker_error,
)

logger = logging.getLogger(__name__)

STRATEGY_RENAME = "rename"
STRATEGY_CREATE_FIRST = "create_first"
UPDATE_STRATEGIES = (STRATEGY_RENAME, STRATEGY_CREATE_FIRST)

_DOCKER_ERRORS = (DockerException, requests.exceptions.RequestException)


class UpdateGuard:
    """Single-flight guard: at most one update per container id at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def is_active(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._active

    @contextmanager
    def claim(self, *container_ids: str) -> Iterator[None]:
        """
        Claim the given ids for the duration of the block.

        Raises:
            ContainerConflictError: If any id is already being updated
        """
        keys = {cid for cid in container_ids if cid}
        with self._lock:
            busy = sorted(keys & self._active)
            if busy:
                raise ContainerConflictError(
                    f"Update already in progress for container {busy[0]}",
                    operation="update",
                    container_id=busy[0],
                )
            self._active |= keys
        try:
            yield
        finally:
            with self._lock:
                self._active -= keys


class RecreateWorkflow:
    """
    Recreates a container from the freshly pulled image of its own reference.

    Responsibilities:
    - Snapshot the container configuration (image, Config, HostConfig, networks)
    - Re-pull the recorded image reference
    - Free the name (``rename`` strategy) and create the replacement
    - Start the replacement, then force-remove the original
    """

    def __init__(
        self,
        session: DockerSession,
        *,
        stop_timeout: int = 10,
        strategy: str = STRATEGY_RENAME,
        guard: Optional[UpdateGuard] = None,
    ):
        if strategy not in UPDATE_STRATEGIES:
            raise ValueError(f"unknown update strategy: {strategy}")
        self._session = session
        self._stop_timeout = stop_timeout
        self._strategy = strategy
        self._guard = guard or UpdateGuard()

    @property
    def guard(self) -> UpdateGuard:
        return self._guard

    async def run(self, container_id: str) -> UpdateResult:
        """
        Update a container to the latest content of its image reference.

        Args:
            container_id: Container ID or name

        Returns:
            UpdateResult describing the replacement

        Raises:
            ContainerNotFoundError: If the container does not exist (nothing changed)
            ContainerConflictError: If an update of the same container is running
            UpdatePhaseError: If a phase after inspect failed; ``phase`` tells which
        """
        with ExitStack() as stack:
            stack.enter_context(self._guard.claim(container_id))
            snapshot = await self._inspect(container_id)
            # ID と名前の両方を確保する。置き換え先も同じ名前を持つため、
            # 置き換え先を対象にした更新は名前の確保で弾かれる
            stack.enter_context(
                self._guard.claim(*({snapshot.id, snapshot.name} - {container_id}))
            )

            logger.info(
                "Updating container %s (%s) from image %s with strategy %s",
                snapshot.name,
                snapshot.short_id,
                snapshot.image,
                self._strategy,
            )

            image_id = await self._phase(UpdatePhase.PULL, snapshot, None, self._pull, snapshot)
            new_id, warnings = await self._phase(
                UpdatePhase.CREATE, snapshot, None, self._create, snapshot
            )
            await self._phase(UpdatePhase.START, snapshot, new_id, self._session.api.start, new_id)
            await self._phase(
                UpdatePhase.REMOVE,
                snapshot,
                new_id,
                functools.partial(self._session.api.remove_container, snapshot.id, force=True),
            )

        image_changed = image_id != snapshot.image_id
        logger.info(
            "Container %s updated: %s -> %s (image %s)",
            snapshot.name,
            snapshot.short_id,
            new_id[:12],
            "changed" if image_changed else "unchanged",
        )
        return UpdateResult(
            old_container_id=snapshot.id,
            new_container_id=new_id,
            name=snapshot.name,
            image=snapshot.image,
            image_id=image_id,
            image_changed=image_changed,
            warnings=warnings,
        )

    async def _inspect(self, container_id: str) -> ContainerSnapshot:
        loop = asyncio.get_running_loop()
        try:
            attrs = await loop.run_in_executor(
                None, lambda: self._session.api.inspect_container(container_id)
            )
        except _DOCKER_ERRORS as e:
            raise translate_docker_error(e, operation="update", container_id=container_id) from e
        try:
            return ContainerSnapshot.from_inspect(attrs)
        except (ValueError, TypeError, AttributeError) as e:
            raise DecodeError(
                f"Unexpected inspect document for container {container_id}: {e}",
                operation="update",
                container_id=container_id,
            ) from e

    async def _phase(
        self,
        phase: UpdatePhase,
        snapshot: ContainerSnapshot,
        new_id: Optional[str],
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        loop = asyncio.get_running_loop()
        logger.debug("[%s] %s phase started", snapshot.name, phase.value)
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except UpdatePhaseError:
            raise
        except ContainerError as e:
            raise self._phase_error(phase, snapshot, new_id, e) from e
        except _DOCKER_ERRORS as e:
            cause = translate_docker_error(e, operation=phase.value, container_id=new_id or snapshot.id)
            raise self._phase_error(phase, snapshot, new_id, cause) from e
        except asyncio.CancelledError:
            logger.warning(
                "Update of %s cancelled during %s phase; the phase itself runs to completion",
                snapshot.name,
                phase.value,
            )
            raise

    def _phase_error(
        self,
        phase: UpdatePhase,
        snapshot: ContainerSnapshot,
        new_id: Optional[str],
        cause: ContainerError,
    ) -> UpdatePhaseError:
        if phase is UpdatePhase.PULL:
            state = f"no changes were made, container {snapshot.short_id} is untouched"
        elif phase is UpdatePhase.START:
            state = (
                f"replacement {new_id} exists but is not running; the original container "
                f"{snapshot.short_id} still exists{self._old_state_note(snapshot)}"
            )
        elif phase is UpdatePhase.REMOVE:
            state = (
                f"replacement {new_id} is running under {snapshot.name}; the original container "
                f"{snapshot.short_id} could not be removed and must be removed by hand"
            )
        else:
            state = "runtime state must be checked by hand"
        logger.error("Update of %s failed during %s phase: %s (%s)", snapshot.name, phase.value, cause, state)
        return UpdatePhaseError(
            phase.value,
            f"{cause}; {state}",
            container_id=snapshot.id,
            new_container_id=new_id,
            cause=cause,
        )

    def _old_state_note(self, snapshot: ContainerSnapshot) -> str:
        if self._strategy == STRATEGY_RENAME:
            return f" as {self._replaced_name(snapshot)} (stopped)"
        return ""

    @staticmethod
    def _replaced_name(snapshot: ContainerSnapshot) -> str:
        return f"{snapshot.name}-replaced-{snapshot.short_id}"

    # Phases below run inside the executor.

    def _pull(self, snapshot: ContainerSnapshot) -> str:
        api = self._session.api
        last_status = None
        for event in api.pull(snapshot.image, stream=True, decode=True):
            if not isinstance(event, dict):
                continue
            if event.get("error"):
                raise ContainerError(
                    f"Failed to pull image {snapshot.image}: {event['error']}",
                    operation="pull",
                    container_id=snapshot.id,
                )
            last_status = event.get("status") or last_status
        logger.info("Pulled %s: %s", snapshot.image, last_status or "done")
        return str(api.inspect_image(snapshot.image).get("Id") or "")

    def _create(self, snapshot: ContainerSnapshot) -> Tuple[str, List[str]]:
        api = self._session.api
        renamed = False
        stopped = False

        if self._strategy == STRATEGY_RENAME:
            try:
                if snapshot.running:
                    api.stop(snapshot.id, timeout=self._stop_timeout)
                    stopped = True
                api.rename(snapshot.id, self._replaced_name(snapshot))
                renamed = True
            except _DOCKER_ERRORS as e:
                cause = translate_docker_error(e, operation="rename", container_id=snapshot.id)
                note = self._restore(snapshot, renamed=renamed, restart=stopped)
                raise UpdatePhaseError(
                    UpdatePhase.CREATE.value,
                    f"could not free the name {snapshot.name}: {cause}; {note}",
                    container_id=snapshot.id,
                    cause=cause,
                ) from e

        try:
            response = api.create_container_from_config(
                snapshot.to_create_config(), name=snapshot.name
            )
        except _DOCKER_ERRORS as e:
            cause = translate_docker_error(e, operation="create", container_id=snapshot.id)
            note = self._restore(snapshot, renamed=renamed, restart=stopped)
            raise UpdatePhaseError(
                UpdatePhase.CREATE.value,
                f"{cause}; {note}",
                container_id=snapshot.id,
                cause=cause,
            ) from e

        new_id = response.get("Id") if isinstance(response, dict) else None
        if not new_id:
            # 置き換え先が作られていれば名前の復元は失敗し、その旨がメッセージに残る
            note = self._restore(snapshot, renamed=renamed, restart=stopped)
            raise UpdatePhaseError(
                UpdatePhase.CREATE.value,
                f"daemon did not return the id of the replacement; {note}; "
                "runtime state must be checked by hand",
                container_id=snapshot.id,
                cause=DecodeError("create response without Id", operation="create"),
            )
        warnings = [str(w) for w in (response.get("Warnings") or [])]
        for warning in warnings:
            logger.warning("Create warning for %s: %s", snapshot.name, warning)

        for attachment in snapshot.secondary_networks():
            kwargs = {
                "aliases": attachment.aliases,
                "links": attachment.links,
                "ipv4_address": attachment.ipv4_address,
                "ipv6_address": attachment.ipv6_address,
                "link_local_ips": attachment.link_local_ips,
                "driver_opt": attachment.driver_opts,
            }
            try:
                api.connect_container_to_network(
                    new_id,
                    attachment.network,
                    **{key: value for key, value in kwargs.items() if value is not None},
                )
            except _DOCKER_ERRORS as e:
                cause = translate_docker_error(e, operation="connect network", container_id=new_id)
                raise UpdatePhaseError(
                    UpdatePhase.CREATE.value,
                    f"replacement {new_id} was created but could not join network "
                    f"{attachment.network}: {cause}; both containers exist"
                    f"{self._old_state_note(snapshot)}",
                    container_id=snapshot.id,
                    new_container_id=new_id,
                    cause=cause,
                ) from e

        logger.info("Created replacement %s for %s", new_id[:12], snapshot.name)
        return new_id, warnings

    def _restore(self, snapshot: ContainerSnapshot, *, renamed: bool, restart: bool) -> str:
        """Undo the name/stop preparation of the create phase; returns a note for the error."""
        if not renamed and not restart:
            return f"original container {snapshot.short_id} is untouched"
        api = self._session.api
        done = []
        try:
            if renamed:
                api.rename(snapshot.id, snapshot.name)
                done.append("name restored")
            if restart:
                api.start(snapshot.id)
                done.append("restarted")
        except _DOCKER_ERRORS as e:
            logger.error("Failed to restore original container %s: %s", snapshot.short_id, e)
            return (
                f"restoring original container {snapshot.short_id} failed ({e}); "
                f"it may be stopped or named {self._replaced_name(snapshot)}"
            )
        return f"original container {snapshot.short_id} {' and '.join(done)}"
