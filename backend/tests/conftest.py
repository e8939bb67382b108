from __future__ import annotations

import copy
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional
from unittest.mock import MagicMock

# 起動時のデーモン接続はテストでは行わない (モジュール設定の生成前に指定する)
os.environ.setdefault("DOCKER_CONNECT_ON_STARTUP", "false")

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from docker.errors import APIError, ImageNotFound, NotFound
from hypothesis import settings

import pytest

from dockerops import config as app_config
from dockerops.api import auth as auth_api
from dockerops.services.docker_session import DockerSession

_DEFAULT_MAX_EXAMPLES = int(os.getenv("HYPOTHESIS_MAX_EXAMPLES", "25"))

MB = 1024 * 1024

# CI/コンテナ環境では I/O 初期化で 200ms を超えることがあるため、
# デッドラインを無効化してフレークを防ぐ。
if "HYPOTHESIS_PROFILE" not in os.environ:
    try:
        settings.register_profile(
            "ci",
            settings(
                deadline=None,
                max_examples=_DEFAULT_MAX_EXAMPLES,
            ),
        )
    except ValueError:
        # プロファイルが既に存在する場合は無視して既定プロファイルを読み込む
        pass
    settings.load_profile("ci")


@pytest.fixture(autouse=True)
def _isolated_state_db(tmp_path) -> Iterator[Path]:
    """
    テストごとに SQLite ファイルを分離し、API のシングルトンも作り直す。
    """
    db_path = tmp_path / "state" / "state.db"
    previous = app_config.settings.state_db_path
    app_config.settings.state_db_path = str(db_path)
    auth_api._state_store = None
    auth_api._auth_service = None
    try:
        yield db_path
    finally:
        app_config.settings.state_db_path = previous
        auth_api._state_store = None
        auth_api._auth_service = None


# ---------------------------------------------------------------------------
# Fake Docker daemon
# ---------------------------------------------------------------------------


def api_error(status_code: int, message: str) -> APIError:
    response = MagicMock()
    response.status_code = status_code
    response.reason = message
    response.url = "https://daemon.test:2376"
    return APIError(message, response=response, explanation=message)


def default_stats(interface: str = "eth0") -> dict[str, Any]:
    """CPU 10%, memory 50/200 MB, 3 MB received / 1 MB sent."""
    return {
        "read": "2024-01-01T00:00:01Z",
        "cpu_stats": {
            "cpu_usage": {"total_usage": 200_000_000},
            "system_cpu_usage": 2_000_000_000,
            "online_cpus": 2,
        },
        "precpu_stats": {
            "cpu_usage": {"total_usage": 100_000_000},
            "system_cpu_usage": 1_000_000_000,
            "online_cpus": 2,
        },
        "memory_stats": {"usage": 50 * MB, "limit": 200 * MB},
        "networks": {interface: {"rx_bytes": 3 * MB, "tx_bytes": 1 * MB}},
    }


class FakeDaemon:
    """
    In-memory stand-in for the low-level docker APIClient.

    ``api`` is a MagicMock whose methods act on ``containers`` (inspect
    documents keyed by id), so tests can both assert calls and observe state.
    """

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.images: dict[str, str] = {"nginx:latest": "sha256:" + "b" * 64}
        self.stats_docs: dict[str, Any] = {}
        self.pull_events: list[dict[str, Any]] = [
            {"status": "Pulling from library/nginx"},
            {"status": "Status: Downloaded newer image for nginx:latest"},
        ]
        self.api = MagicMock(name="APIClient")
        self.api.api_version = "1.43"
        self.api.containers.side_effect = self._list
        self.api.stats.side_effect = self._stats
        self.api.start.side_effect = self._start
        self.api.stop.side_effect = self._stop
        self.api.remove_container.side_effect = self._remove
        self.api.inspect_container.side_effect = self._inspect
        self.api.pull.side_effect = self._pull
        self.api.inspect_image.side_effect = self._inspect_image
        self.api.rename.side_effect = self._rename
        self.api.create_container_from_config.side_effect = self._create
        self.api.connect_container_to_network.side_effect = self._connect_network

    # helpers -----------------------------------------------------------

    def add(
        self,
        name: str,
        *,
        image: str = "nginx:latest",
        image_id: str = "sha256:" + "a" * 64,
        running: bool = True,
        networks: Optional[dict[str, dict[str, Any]]] = None,
        network_mode: str = "bridge",
        config: Optional[dict[str, Any]] = None,
        host_config: Optional[dict[str, Any]] = None,
    ) -> str:
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        base_config = {
            "Hostname": container_id[:12],
            "Image": image,
            "Env": ["PATH=/usr/bin", "MODE=prod"],
            "Cmd": ["nginx", "-g", "daemon off;"],
            "Labels": {"app": name},
            "ExposedPorts": {"80/tcp": {}},
        }
        base_config.update(config or {})
        base_host_config = {
            "NetworkMode": network_mode,
            "Binds": [f"/srv/{name}:/data:rw"],
            "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]},
            "RestartPolicy": {"Name": "unless-stopped", "MaximumRetryCount": 0},
        }
        base_host_config.update(host_config or {})
        if networks is None:
            networks = {network_mode: {"Aliases": None, "IPAMConfig": None}}
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Image": image_id,
            "Created": "2024-01-01T00:00:00.000000000Z",
            "State": {"Status": "running" if running else "exited", "Running": running},
            "Config": base_config,
            "HostConfig": base_host_config,
            "NetworkSettings": {"Networks": copy.deepcopy(networks)},
        }
        return container_id

    def find(self, ref: str) -> dict[str, Any]:
        for doc in self.containers.values():
            if doc["Id"] == ref or doc["Name"] == f"/{ref}":
                return doc
        matches = [doc for doc in self.containers.values() if doc["Id"].startswith(ref)]
        if len(ref) >= 4 and len(matches) == 1:
            return matches[0]
        raise NotFound(f"No such container: {ref}", explanation=f"No such container: {ref}")

    def by_name(self, name: str) -> Optional[dict[str, Any]]:
        for doc in self.containers.values():
            if doc["Name"] == f"/{name}":
                return doc
        return None

    def is_running(self, ref: str) -> bool:
        return self.find(ref)["State"]["Running"]

    def _set_running(self, doc: dict[str, Any], running: bool) -> None:
        doc["State"] = {"Status": "running" if running else "exited", "Running": running}

    # APIClient side effects -------------------------------------------

    def _list(self, all: bool = False, size: bool = False, **_kwargs) -> list[dict[str, Any]]:
        summaries = []
        for doc in self.containers.values():
            if not all and not doc["State"]["Running"]:
                continue
            summary = {
                "Id": doc["Id"],
                "Names": [doc["Name"]],
                "Image": doc["Config"]["Image"],
                "ImageID": doc["Image"],
                "Command": " ".join(doc["Config"].get("Cmd") or []),
                "Created": 1700000000,
                "State": doc["State"]["Status"],
                "Status": "Up 5 minutes" if doc["State"]["Running"] else "Exited (0) 1 minute ago",
                "Ports": [{"IP": "0.0.0.0", "PrivatePort": 80, "PublicPort": 8080, "Type": "tcp"}],
                "Labels": dict(doc["Config"].get("Labels") or {}),
                "HostConfig": {"NetworkMode": doc["HostConfig"].get("NetworkMode")},
                "NetworkSettings": {
                    "Networks": {
                        name: {"NetworkID": f"net-{name}"}
                        for name in doc["NetworkSettings"]["Networks"]
                    }
                },
                "Mounts": [{"Source": "/srv/data", "Destination": "/data"}],
            }
            if size:
                summary["SizeRw"] = 1024
                summary["SizeRootFs"] = 10 * MB
            summaries.append(summary)
        return summaries

    def _stats(self, container: str, stream: bool = True, **_kwargs) -> Any:
        doc = self.find(container)
        return self.stats_docs.get(doc["Id"], default_stats())

    def _start(self, container: str, **_kwargs) -> None:
        self._set_running(self.find(container), True)

    def _stop(self, container: str, timeout: Optional[int] = None, **_kwargs) -> None:
        self._set_running(self.find(container), False)

    def _remove(self, container: str, force: bool = False, **_kwargs) -> None:
        doc = self.find(container)
        if doc["State"]["Running"] and not force:
            raise api_error(409, "You cannot remove a running container")
        del self.containers[doc["Id"]]

    def _inspect(self, container: str) -> dict[str, Any]:
        return copy.deepcopy(self.find(container))

    def _pull(self, repository: str, tag: Optional[str] = None, stream: bool = False, decode: bool = False, **_kwargs):
        return iter(list(self.pull_events))

    def _inspect_image(self, image: str) -> dict[str, Any]:
        if image not in self.images:
            raise ImageNotFound(f"No such image: {image}", explanation=f"No such image: {image}")
        return {"Id": self.images[image], "RepoTags": [image]}

    def _rename(self, container: str, name: str) -> None:
        doc = self.find(container)
        other = self.by_name(name)
        if other is not None and other is not doc:
            raise api_error(409, f'Conflict. The container name "/{name}" is already in use')
        doc["Name"] = f"/{name}"

    def _create(self, config: dict[str, Any], name: Optional[str] = None, **_kwargs) -> dict[str, Any]:
        if name and self.by_name(name) is not None:
            raise api_error(409, f'Conflict. The container name "/{name}" is already in use')
        body = copy.deepcopy(config)
        host_config = body.pop("HostConfig", {})
        networking = body.pop("NetworkingConfig", {}) or {}
        endpoints = networking.get("EndpointsConfig") or {}
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        body.setdefault("Hostname", container_id[:12])
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name or container_id[:12]}",
            "Image": self.images.get(body["Image"], ""),
            "Created": "2024-06-01T00:00:00.000000000Z",
            "State": {"Status": "created", "Running": False},
            "Config": body,
            "HostConfig": host_config,
            "NetworkSettings": {"Networks": copy.deepcopy(endpoints)},
        }
        return {"Id": container_id, "Warnings": []}

    def _connect_network(self, container: str, net_id: str, **kwargs) -> None:
        doc = self.find(container)
        doc["NetworkSettings"]["Networks"][net_id] = {
            "Aliases": kwargs.get("aliases"),
            "IPAMConfig": {"IPv4Address": kwargs.get("ipv4_address")} if kwargs.get("ipv4_address") else None,
        }


@pytest.fixture
def fake_daemon() -> FakeDaemon:
    """空のフェイクデーモン。"""
    return FakeDaemon()


@pytest.fixture
def docker_session(fake_daemon: FakeDaemon) -> DockerSession:
    """フェイクデーモンに接続済みの DockerSession。"""
    client = MagicMock(name="DockerClient")
    client.api = fake_daemon.api
    client.ping.return_value = True
    return DockerSession(client, base_url="tcp://daemon.test:2376", timeout=10)


# ---------------------------------------------------------------------------
# TLS material
# ---------------------------------------------------------------------------


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _pem_key(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def _ca() -> tuple[x509.Certificate, Any]:
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name("test-ca"))
        .issuer_name(_name("test-ca"))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert, key


@pytest.fixture
def make_tls_dir(tmp_path, _ca) -> Callable[..., Path]:
    """
    client.crt / client.key / ca.crt を持つディレクトリを生成するファクトリ。

    ``not_before`` / ``not_after`` で有効期間を、``mismatched_key`` で
    証明書と一致しない秘密鍵を指定できる。
    """
    ca_cert, ca_key = _ca
    counter = 0

    def _make(
        *,
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
        mismatched_key: bool = False,
    ) -> Path:
        nonlocal counter
        counter += 1
        now = datetime.now(timezone.utc)
        directory = tmp_path / f"certs-{counter}"
        directory.mkdir()

        client_key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name("client"))
            .issuer_name(ca_cert.subject)
            .public_key(client_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or now - timedelta(hours=1))
            .not_valid_after(not_after or now + timedelta(days=30))
            .sign(ca_key, hashes.SHA256())
        )
        written_key = ec.generate_private_key(ec.SECP256R1()) if mismatched_key else client_key

        (directory / "client.crt").write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        (directory / "client.key").write_bytes(_pem_key(written_key))
        (directory / "ca.crt").write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
        return directory

    return _make


@pytest.fixture
def tls_dir(make_tls_dir) -> Path:
    """有効な TLS 素材一式。"""
    return make_tls_dir()
