"""Mutually-authenticated session to a remote Docker daemon."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import docker
import requests
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from docker.errors import DockerException, TLSParameterError
from docker.tls import TLSConfig

from .errors import CredentialError, DaemonConnectionError, DaemonUnreachableError

logger = logging.getLogger(__name__)

CLIENT_CERT_FILE = "client.crt"
CLIENT_KEY_FILE = "client.key"
CA_CERT_FILE = "ca.crt"
DEFAULT_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class TLSMaterial:
    """検証済みの TLS ファイルパス一式。"""

    cert_path: Path
    key_path: Path
    ca_path: Path
    not_valid_after: datetime


def _read_pem(path: Path) -> bytes:
    if not path.is_file():
        raise CredentialError(f"TLS file not found: {path}", operation="connect")
    try:
        return path.read_bytes()
    except OSError as e:
        raise CredentialError(f"Cannot read TLS file {path}: {e}", operation="connect") from e


def _public_key_der(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_tls_material(cert_dir: Union[str, Path], now: Optional[datetime] = None) -> TLSMaterial:
    """
    Locate and validate the client keypair and CA bundle in ``cert_dir``.

    Args:
        cert_dir: Directory holding client.crt, client.key and ca.crt (PEM)
        now: Reference time for the validity check (defaults to current UTC)

    Returns:
        TLSMaterial with the resolved paths

    Raises:
        CredentialError: If a file is missing, unparsable, expired, or the key
            does not belong to the certificate
    """
    directory = Path(cert_dir).expanduser()
    cert_path = directory / CLIENT_CERT_FILE
    key_path = directory / CLIENT_KEY_FILE
    ca_path = directory / CA_CERT_FILE

    try:
        cert = x509.load_pem_x509_certificate(_read_pem(cert_path))
    except ValueError as e:
        raise CredentialError(
            f"Client certificate {cert_path} is not a valid PEM certificate", operation="connect"
        ) from e

    try:
        key = serialization.load_pem_private_key(_read_pem(key_path), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        # TypeError: パスフレーズ付きの鍵
        raise CredentialError(
            f"Client key {key_path} is not an unencrypted PEM private key", operation="connect"
        ) from e

    try:
        ca_certs = x509.load_pem_x509_certificates(_read_pem(ca_path))
    except ValueError as e:
        raise CredentialError(
            f"CA bundle {ca_path} does not contain a PEM certificate", operation="connect"
        ) from e

    now = now or datetime.now(timezone.utc)
    if now < cert.not_valid_before_utc:
        raise CredentialError(
            f"Client certificate is not valid before {cert.not_valid_before_utc.isoformat()}",
            operation="connect",
        )
    if now > cert.not_valid_after_utc:
        raise CredentialError(
            f"Client certificate expired at {cert.not_valid_after_utc.isoformat()}",
            operation="connect",
        )

    if _public_key_der(cert.public_key()) != _public_key_der(key.public_key()):
        raise CredentialError(
            f"Client key {key_path} does not match certificate {cert_path}", operation="connect"
        )

    logger.debug(
        "Loaded TLS material from %s (client cert valid until %s, %d CA certificate(s))",
        directory,
        cert.not_valid_after_utc.isoformat(),
        len(ca_certs),
    )
    return TLSMaterial(
        cert_path=cert_path,
        key_path=key_path,
        ca_path=ca_path,
        not_valid_after=cert.not_valid_after_utc,
    )


class DockerSession:
    """
    Authenticated, reusable handle to one Docker daemon.

    Created by :func:`connect` and owned by whoever called it. The wrapped
    client is never replaced after construction, so the session can be shared
    by concurrent callers without locking.
    """

    def __init__(self, client: docker.DockerClient, base_url: str, timeout: int = DEFAULT_TIMEOUT_SECONDS):
        self._client = client
        self.base_url = base_url
        self.timeout = timeout

    @property
    def client(self) -> docker.DockerClient:
        return self._client

    @property
    def api(self) -> docker.APIClient:
        """Low-level API client of the session."""
        return self._client.api

    @property
    def api_version(self) -> str:
        return str(self._client.api.api_version)

    def ping(self) -> None:
        """
        Issue a liveness probe against the daemon.

        Raises:
            DaemonUnreachableError: If the daemon does not answer with OK
        """
        try:
            ok = self._client.ping()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise DaemonUnreachableError(
                f"Failed to ping Docker daemon at {self.base_url}: {e}", operation="ping"
            ) from e
        if not ok:
            raise DaemonUnreachableError(
                f"Docker daemon at {self.base_url} did not answer the ping", operation="ping"
            )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        try:
            self._client.close()
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning("Docker クライアントのクローズに失敗しました (%s): %s", self.base_url, e)

    def __enter__(self) -> "DockerSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def connect(
    cert_dir: Union[str, Path],
    host: str,
    port: Union[str, int],
    *,
    timeout: int = DEFAULT_TIMEOUT_SECONDS,
) -> DockerSession:
    """
    Connect to a Docker daemon over mutual TLS and verify it answers.

    Args:
        cert_dir: Directory containing client.crt, client.key and ca.crt
        host: Daemon hostname or IP address
        port: Daemon TCP port
        timeout: Per-request HTTP timeout in seconds

    Returns:
        DockerSession bound to the daemon

    Raises:
        CredentialError: If the TLS material is missing or invalid
        DaemonConnectionError: If the TLS handshake or API version negotiation fails
        DaemonUnreachableError: If the liveness probe fails
    """
    material = load_tls_material(cert_dir)
    base_url = f"tcp://{host}:{port}"

    try:
        tls_config = TLSConfig(
            client_cert=(str(material.cert_path), str(material.key_path)),
            ca_cert=str(material.ca_path),
            verify=True,
        )
    except TLSParameterError as e:
        raise CredentialError(str(e), operation="connect") from e

    try:
        # version="auto" は /version を叩いて API バージョンをネゴシエーションする
        client = docker.DockerClient(
            base_url=base_url,
            tls=tls_config,
            version="auto",
            timeout=timeout,
        )
    except (DockerException, requests.exceptions.RequestException, ValueError) as e:
        raise DaemonConnectionError(
            f"Failed to connect to Docker daemon at {base_url}: {e}", operation="connect"
        ) from e

    session = DockerSession(client, base_url=base_url, timeout=timeout)
    try:
        session.ping()
    except DaemonUnreachableError:
        session.close()
        raise

    logger.info("Connected to Docker daemon at %s (API %s)", base_url, session.api_version)
    return session
