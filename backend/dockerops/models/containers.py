"""Container models."""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

BYTES_PER_MB = 1024 * 1024

# 再作成時に引き継ぐエンドポイント設定 (IP や MAC などの実行時情報は除外)
_DECLARATIVE_ENDPOINT_KEYS = ("IPAMConfig", "Links", "Aliases", "DriverOpts")


class ContainerState(str, Enum):
    """Lifecycle state reported by the daemon."""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"


class PortMapping(BaseModel):
    """Published port of a container."""
    model_config = ConfigDict(populate_by_name=True)

    ip: str = Field(default="", description="Host IP the port is bound to")
    private_port: int = Field(..., alias="privatePort", description="Port inside the container")
    public_port: int = Field(default=0, alias="publicPort", description="Port on the host (0 if unpublished)")
    type: str = Field(default="tcp", description="Protocol")


class MountPoint(BaseModel):
    """A mount of a container (source on the host, destination inside)."""
    source: str = Field(default="", description="Host path or volume source")
    destination: str = Field(..., description="Path inside the container")


class ContainerSummary(BaseModel):
    """Information about a Docker container, as listed by the daemon."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Container ID")
    name: str = Field(..., description="Container name without the leading slash")
    image: str = Field(..., description="Image reference")
    image_id: str = Field(default="", alias="imageID", description="Image digest")
    command: str = Field(default="", description="Invocation command")
    created: datetime = Field(..., description="Container creation timestamp")
    state: ContainerState = Field(..., description="Lifecycle state")
    status: str = Field(default="", description="Human readable status")
    ports: List[PortMapping] = Field(default_factory=list, alias="port", description="Port mappings")
    size_rw: int = Field(default=0, alias="sizeRw", description="Size of the writable layer")
    size_root_fs: int = Field(default=0, alias="sizeRootFs", description="Total root filesystem size")
    network_mode: str = Field(default="", alias="networkMode", description="HostConfig network mode")
    networks: List[str] = Field(
        default_factory=list, alias="networkSettings", description="Attached network IDs"
    )
    mounts: List[MountPoint] = Field(default_factory=list, description="Mounts")
    labels: Dict[str, str] = Field(default_factory=dict, description="Container labels")

    @classmethod
    def from_api(cls, summary: Dict[str, Any]) -> "ContainerSummary":
        """
        Build a summary from one ``GET /containers/json`` record.

        Raises:
            ValueError: If the record lacks an id or carries an unknown state
        """
        container_id = summary.get("Id") or summary.get("ID")
        if not container_id:
            raise ValueError("container record without Id")

        names = summary.get("Names") or []
        name = names[0] if isinstance(names, list) and names else str(container_id)[:12]

        created_raw = summary.get("Created") or 0
        created = datetime.fromtimestamp(int(created_raw), tz=timezone.utc)

        ports = [
            PortMapping(
                ip=port.get("IP") or "",
                private_port=port.get("PrivatePort") or 0,
                public_port=port.get("PublicPort") or 0,
                type=port.get("Type") or "tcp",
            )
            for port in summary.get("Ports") or []
            if isinstance(port, dict)
        ]

        networks = (summary.get("NetworkSettings") or {}).get("Networks") or {}
        mounts = [
            MountPoint(source=mount.get("Source") or "", destination=mount.get("Destination") or "")
            for mount in summary.get("Mounts") or []
            if isinstance(mount, dict)
        ]
        labels = summary.get("Labels") or {}

        return cls(
            id=str(container_id),
            name=name.lstrip("/"),  # Docker adds leading slash
            image=str(summary.get("Image") or ""),
            image_id=str(summary.get("ImageID") or ""),
            command=str(summary.get("Command") or ""),
            created=created,
            state=ContainerState(str(summary.get("State") or "").lower()),
            status=str(summary.get("Status") or ""),
            ports=ports,
            size_rw=summary.get("SizeRw") or 0,
            size_root_fs=summary.get("SizeRootFs") or 0,
            network_mode=str((summary.get("HostConfig") or {}).get("NetworkMode") or ""),
            networks=[str(n.get("NetworkID") or "") for n in networks.values() if isinstance(n, dict)],
            mounts=mounts,
            labels={str(k): str(v) for k, v in labels.items()},
        )


# Raw stats payload of GET /containers/{id}/stats?stream=false


class CpuUsage(BaseModel):
    total_usage: int = 0
    percpu_usage: Optional[List[int]] = None


class CpuStats(BaseModel):
    cpu_usage: CpuUsage = Field(default_factory=CpuUsage)
    system_cpu_usage: Optional[int] = None
    online_cpus: Optional[int] = None

    @property
    def cpu_count(self) -> int:
        if self.online_cpus:
            return self.online_cpus
        if self.cpu_usage.percpu_usage:
            return len(self.cpu_usage.percpu_usage)
        return 1


class MemoryStats(BaseModel):
    usage: int = 0
    limit: int = 0


class NetworkCounters(BaseModel):
    rx_bytes: int = 0
    tx_bytes: int = 0


class RawStats(BaseModel):
    """Subset of the daemon stats document used to derive ContainerStats."""
    model_config = ConfigDict(extra="ignore")

    cpu_stats: CpuStats = Field(default_factory=CpuStats)
    precpu_stats: CpuStats = Field(default_factory=CpuStats)
    memory_stats: MemoryStats = Field(default_factory=MemoryStats)
    networks: Optional[Dict[str, NetworkCounters]] = None

    def cpu_percent(self) -> float:
        """
        CPU utilisation in percent of the host's total CPU time.

        Uses the delta against the daemon's previous sample when one is
        present, the ratio of the absolute counters otherwise. The result is
        finite and bounded by 100 x online cpus.
        """
        total = self.cpu_stats.cpu_usage.total_usage
        system = self.cpu_stats.system_cpu_usage or 0
        cpu_delta = total - self.precpu_stats.cpu_usage.total_usage
        system_delta = system - (self.precpu_stats.system_cpu_usage or 0)

        if self.precpu_stats.system_cpu_usage and system_delta > 0 and cpu_delta >= 0:
            percent = cpu_delta / system_delta * 100.0
        elif system > 0:
            percent = total / system * 100.0
        else:
            return 0.0

        upper = 100.0 * self.cpu_stats.cpu_count
        if not math.isfinite(percent):
            return 0.0
        return min(max(percent, 0.0), upper)


class ContainerStats(BaseModel):
    """Point-in-time resource usage of one container."""
    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(..., alias="containerID", description="Container ID")
    cpu_percent: float = Field(..., description="CPU utilisation in percent")
    memory_usage_mb: float = Field(..., description="Memory usage in MB")
    memory_limit_mb: float = Field(..., description="Memory limit in MB")
    network_interface: str = Field(..., description="Interface the network counters belong to")
    network_rx_mb: float = Field(..., description="Bytes received on the interface, in MB")
    network_tx_mb: float = Field(..., description="Bytes sent on the interface, in MB")


class ContainerStatsDisplay(BaseModel):
    """Formatted stats, as the console front-end renders them."""
    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(..., alias="containerID")
    cpu: str
    memory: str
    network_rx: str = Field(..., alias="networkRx")
    network_tx: str = Field(..., alias="networkTx")

    @classmethod
    def from_stats(cls, stats: ContainerStats) -> "ContainerStatsDisplay":
        return cls(
            container_id=stats.container_id,
            cpu=f"{stats.cpu_percent:.2f}%",
            memory=f"{stats.memory_usage_mb:.2f} / {stats.memory_limit_mb:.2f} MB",
            network_rx=f"{stats.network_rx_mb:.2f} MB",
            network_tx=f"{stats.network_tx_mb:.2f} MB",
        )


class UpdatePhase(str, Enum):
    """Phases of the recreate workflow, in execution order."""
    INSPECT = "inspect"
    PULL = "pull"
    CREATE = "create"
    START = "start"
    REMOVE = "remove"


class NetworkAttachment(BaseModel):
    """Declarative settings of one network endpoint."""
    network: str
    settings: Dict[str, Any] = Field(default_factory=dict)

    @property
    def aliases(self) -> Optional[List[str]]:
        return self.settings.get("Aliases") or None

    @property
    def links(self) -> Optional[List[Tuple[str, Optional[str]]]]:
        """Links as (container, alias) pairs, the form docker-py expects."""
        raw = self.settings.get("Links") or []
        pairs: List[Tuple[str, Optional[str]]] = []
        for link in raw:
            target, _, alias = str(link).partition(":")
            pairs.append((target, alias or None))
        return pairs or None

    @property
    def ipv4_address(self) -> Optional[str]:
        return (self.settings.get("IPAMConfig") or {}).get("IPv4Address") or None

    @property
    def ipv6_address(self) -> Optional[str]:
        return (self.settings.get("IPAMConfig") or {}).get("IPv6Address") or None

    @property
    def link_local_ips(self) -> Optional[List[str]]:
        return (self.settings.get("IPAMConfig") or {}).get("LinkLocalIPs") or None

    @property
    def driver_opts(self) -> Optional[Dict[str, str]]:
        return self.settings.get("DriverOpts") or None


class ContainerSnapshot(BaseModel):
    """
    Configuration of a container captured before it is recreated.

    Holds the raw ``Config`` and ``HostConfig`` documents from inspect so that
    every previously applied setting (command, entrypoint, env, exposed ports,
    labels, resource limits, mounts, restart policy, port bindings) survives
    the recreate, plus the declarative part of each network endpoint.
    """

    id: str
    name: str
    image: str
    image_id: str = ""
    running: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)
    host_config: Dict[str, Any] = Field(default_factory=dict)
    endpoints: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_inspect(cls, attrs: Dict[str, Any]) -> "ContainerSnapshot":
        """
        Build a snapshot from ``GET /containers/{id}/json``.

        Raises:
            ValueError: If the document lacks Id, Name or Config.Image
        """
        container_id = attrs.get("Id")
        name = (attrs.get("Name") or "").lstrip("/")
        config = dict(attrs.get("Config") or {})
        image = config.get("Image")
        if not container_id or not name or not image:
            raise ValueError("inspect document without Id, Name or Config.Image")

        short_id = container_id[:12]
        endpoints: Dict[str, Dict[str, Any]] = {}
        networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
        for network_name, endpoint in networks.items():
            endpoint = endpoint or {}
            declared = {key: endpoint[key] for key in _DECLARATIVE_ENDPOINT_KEYS if endpoint.get(key)}
            # 旧コンテナの短縮 ID は新コンテナには不要
            aliases = [a for a in declared.get("Aliases") or [] if a != short_id]
            if aliases:
                declared["Aliases"] = aliases
            else:
                declared.pop("Aliases", None)
            endpoints[network_name] = declared

        return cls(
            id=container_id,
            name=name,
            image=image,
            image_id=attrs.get("Image") or "",
            running=bool((attrs.get("State") or {}).get("Running")),
            config=config,
            host_config=dict(attrs.get("HostConfig") or {}),
            endpoints=endpoints,
        )

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def env(self) -> List[str]:
        return list(self.config.get("Env") or [])

    @property
    def command(self) -> Optional[List[str]]:
        return self.config.get("Cmd")

    @property
    def entrypoint(self) -> Optional[List[str]]:
        return self.config.get("Entrypoint")

    @property
    def binds(self) -> List[str]:
        return list(self.host_config.get("Binds") or [])

    @property
    def restart_policy(self) -> Dict[str, Any]:
        return dict(self.host_config.get("RestartPolicy") or {})

    @property
    def network_mode(self) -> str:
        return str(self.host_config.get("NetworkMode") or "")

    def _shares_foreign_stack(self) -> bool:
        mode = self.network_mode
        return mode in ("host", "none") or mode.startswith("container:")

    def primary_network(self) -> Optional[str]:
        """Network attached at create time (the one named by NetworkMode when possible)."""
        if self._shares_foreign_stack() or not self.endpoints:
            return None
        if self.network_mode in self.endpoints:
            return self.network_mode
        if self.network_mode == "default" and "bridge" in self.endpoints:
            return "bridge"
        return next(iter(self.endpoints))

    def secondary_networks(self) -> List[NetworkAttachment]:
        """Networks to connect after the replacement has been created."""
        primary = self.primary_network()
        if primary is None:
            return []
        return [
            NetworkAttachment(network=name, settings=settings)
            for name, settings in self.endpoints.items()
            if name != primary
        ]

    def to_create_config(self) -> Dict[str, Any]:
        """Body for ``POST /containers/create`` reproducing this container."""
        body = dict(self.config)
        # Hostname は未指定時に旧コンテナの短縮 ID が入るため引き継がない
        if body.get("Hostname") == self.short_id:
            body.pop("Hostname")
        body["HostConfig"] = dict(self.host_config)

        primary = self.primary_network()
        if primary is not None:
            body["NetworkingConfig"] = {"EndpointsConfig": {primary: dict(self.endpoints[primary])}}
        return body


class UpdateResult(BaseModel):
    """Outcome of a successful recreate."""
    old_container_id: str
    new_container_id: str
    name: str
    image: str
    image_id: str = ""
    image_changed: bool = True
    warnings: List[str] = Field(default_factory=list)


class ContainerActionResponse(BaseModel):
    """Response for container actions (start, stop, update, delete)."""
    message: str = Field(default="success", description="Action result message")


class ContainerUpdateResponse(ContainerActionResponse):
    """Response for an update, carrying the replacement's identity."""
    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(..., alias="containerID")
    old_container_id: str = Field(..., alias="oldContainerID")
    name: str
    image_id: str = Field(default="", alias="imageID")
    image_changed: bool = Field(default=True, alias="imageChanged")


class ContainerListResponse(BaseModel):
    """Response containing list of containers."""
    model_config = ConfigDict(populate_by_name=True)

    containers: List[ContainerSummary] = Field(..., alias="containerList")


class ContainerStatsResponse(BaseModel):
    """Response wrapping formatted stats."""
    stats: ContainerStatsDisplay
