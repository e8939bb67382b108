"""Container API endpoints."""

import asyncio
import logging
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from ..config import settings
from ..models.auth import Session
from ..models.containers import (
    ContainerActionResponse,
    ContainerListResponse,
    ContainerStatsDisplay,
    ContainerStatsResponse,
    ContainerUpdateResponse,
)
from ..models.state import AuditLogResponse
from ..services.containers import ContainerService
from ..services.docker_session import connect
from ..services.errors import ContainerError, UpdatePhaseError
from ..services.state_store import StateStore
from .auth import get_state_store, require_operator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/docker", tags=["docker"])

AUDIT_CATEGORY = "container"


def create_container_service() -> ContainerService:
    """
    Connect to the configured daemon and build the container service.

    Blocking: performs the TLS handshake, version negotiation and ping.
    """
    session = connect(
        settings.cert_dir,
        settings.docker_host,
        settings.docker_port,
        timeout=settings.docker_request_timeout_seconds,
    )
    return ContainerService(
        session,
        stop_timeout=settings.docker_stop_timeout_seconds,
        stats_interface=settings.docker_stats_interface,
        include_size=settings.docker_list_include_size,
        update_strategy=settings.docker_update_strategy,
    )


async def get_container_service(request: Request) -> ContainerService:
    """
    Dependency to get the container service held by the application.

    起動時に接続できなかった場合は最初のリクエストで再接続する。
    """
    service = getattr(request.app.state, "container_service", None)
    if service is not None:
        return service

    lock = getattr(request.app.state, "container_connect_lock", None)
    if lock is None:
        # lifespan を経由しない起動 (TestClient をコンテキスト外で使う等)
        lock = request.app.state.container_connect_lock = asyncio.Lock()
    async with lock:
        service = getattr(request.app.state, "container_service", None)
        if service is None:
            loop = asyncio.get_running_loop()
            service = await loop.run_in_executor(None, create_container_service)
            request.app.state.container_service = service
    return service


def _audit(
    state_store: StateStore,
    action: str,
    operator: Session,
    container_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    state_store.record_audit_log(
        category=AUDIT_CATEGORY,
        action=action,
        actor=operator.user_email,
        target=container_id,
        metadata=metadata or {},
    )


def _failure_metadata(error: ContainerError) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"result": "failed", "error": type(error).__name__}
    if isinstance(error, UpdatePhaseError):
        metadata["phase"] = error.phase
        if error.new_container_id:
            metadata["new_container_id"] = error.new_container_id
    return metadata


@router.get("/containers", response_model=ContainerListResponse)
async def list_containers(
    operator: Annotated[Session, Depends(require_operator)],
    container_service: Annotated[ContainerService, Depends(get_container_service)],
):
    """
    List all Docker containers, including stopped ones.

    Requires valid session authentication.
    """
    containers = await container_service.list_containers()
    return ContainerListResponse(containers=containers)


@router.get("/stats/{container_id}", response_model=ContainerStatsResponse)
async def get_stats(
    container_id: str,
    operator: Annotated[Session, Depends(require_operator)],
    container_service: Annotated[ContainerService, Depends(get_container_service)],
):
    """
    Get a point-in-time resource snapshot of a container.

    Values are formatted for display: CPU in percent, memory and network in MB.
    """
    stats = await container_service.get_stats(container_id)
    return ContainerStatsResponse(stats=ContainerStatsDisplay.from_stats(stats))


@router.post("/startContainer/{container_id}", response_model=ContainerActionResponse)
async def start_container(
    container_id: str,
    operator: Annotated[Session, Depends(require_operator)],
    container_service: Annotated[ContainerService, Depends(get_container_service)],
    state_store: Annotated[StateStore, Depends(get_state_store)],
):
    """Start a stopped container."""
    try:
        await container_service.start_container(container_id)
    except ContainerError as e:
        _audit(state_store, "start", operator, container_id, _failure_metadata(e))
        raise
    _audit(state_store, "start", operator, container_id, {"result": "success"})
    return ContainerActionResponse()


@router.post("/stopContainer/{container_id}", response_model=ContainerActionResponse)
async def stop_container(
    container_id: str,
    operator: Annotated[Session, Depends(require_operator)],
    container_service: Annotated[ContainerService, Depends(get_container_service)],
    state_store: Annotated[StateStore, Depends(get_state_store)],
):
    """Stop a running container, waiting the configured grace period."""
    try:
        await container_service.stop_container(container_id)
    except ContainerError as e:
        _audit(state_store, "stop", operator, container_id, _failure_metadata(e))
        raise
    _audit(state_store, "stop", operator, container_id, {"result": "success"})
    return ContainerActionResponse()


@router.post("/updateContainer/{container_id}", response_model=ContainerUpdateResponse)
async def update_container(
    container_id: str,
    operator: Annotated[Session, Depends(require_operator)],
    container_service: Annotated[ContainerService, Depends(get_container_service)],
    state_store: Annotated[StateStore, Depends(get_state_store)],
):
    """
    Recreate a container from the latest content of its image reference.

    The replacement keeps the name, configuration and networks of the
    original and gets a new container ID.
    """
    try:
        result = await container_service.update_container(container_id)
    except ContainerError as e:
        _audit(state_store, "update", operator, container_id, _failure_metadata(e))
        raise
    _audit(
        state_store,
        "update",
        operator,
        container_id,
        {
            "result": "success",
            "new_container_id": result.new_container_id,
            "image": result.image,
            "image_changed": result.image_changed,
        },
    )
    return ContainerUpdateResponse(
        container_id=result.new_container_id,
        old_container_id=result.old_container_id,
        name=result.name,
        image_id=result.image_id,
        image_changed=result.image_changed,
    )


@router.delete("/deleteContainer/{container_id}", response_model=ContainerActionResponse)
async def delete_container(
    container_id: str,
    operator: Annotated[Session, Depends(require_operator)],
    container_service: Annotated[ContainerService, Depends(get_container_service)],
    state_store: Annotated[StateStore, Depends(get_state_store)],
):
    """Force-remove a container, running or not."""
    try:
        await container_service.delete_container(container_id)
    except ContainerError as e:
        _audit(state_store, "delete", operator, container_id, _failure_metadata(e))
        raise
    _audit(state_store, "delete", operator, container_id, {"result": "success"})
    return ContainerActionResponse()


@router.get("/audit", response_model=AuditLogResponse)
async def list_audit_logs(
    operator: Annotated[Session, Depends(require_operator)],
    state_store: Annotated[StateStore, Depends(get_state_store)],
    limit: Annotated[Optional[int], Query(ge=1, le=500)] = None,
    container_id: Annotated[Optional[str], Query(alias="containerID")] = None,
):
    """Recent container operations, newest first, optionally for one container."""
    entries = state_store.get_recent_audit_logs(
        limit or settings.audit_log_default_limit, target=container_id
    )
    return AuditLogResponse(entries=entries)
