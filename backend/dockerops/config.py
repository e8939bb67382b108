from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Docker daemon (TCP + mutual TLS)
    # client.crt / client.key / ca.crt を格納したディレクトリ
    cert_path: str = Field(default="certs", validation_alias="CERT_PATH")
    # DOCKER_HOST はホスト名のみ (tcp:// は付けない)
    docker_host: str = Field(default="localhost", validation_alias="DOCKER_HOST")
    docker_port: str = Field(default="2376", validation_alias="DOCKER_PORT")
    # Per-request HTTP timeout towards the daemon, in seconds
    docker_request_timeout_seconds: int = 10
    # Grace period before the daemon kills a stopping container
    docker_stop_timeout_seconds: int = 10
    docker_stats_interface: str = "eth0"
    # SizeRw / SizeRootFs は size=true のときだけ返される
    docker_list_include_size: bool = True
    docker_update_strategy: Literal["rename", "create_first"] = "rename"
    # False にすると最初のリクエストまで接続を遅延する
    docker_connect_on_startup: bool = True

    # Operator accounts / sessions
    state_db_path: str = "data/state.db"
    session_timeout_minutes: int = 60
    allow_registration: bool = Field(default=True, validation_alias="ALLOW_REGISTRATION")
    audit_log_default_limit: int = 50
    # 起動時にこれより古い監査ログを削除する
    audit_log_retention_days: int = 90

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"

    # Application Configuration
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, validation_alias="PORT")

    @field_validator(
        "docker_request_timeout_seconds",
        "docker_stop_timeout_seconds",
        "session_timeout_minutes",
        "audit_log_retention_days",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("docker_port")
    @classmethod
    def _valid_port(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit() or not 0 < int(value) < 65536:
            raise ValueError(f"invalid Docker daemon port: {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def cert_dir(self) -> Path:
        """証明書ディレクトリを Path で返す。"""
        return Path(self.cert_path).expanduser()


settings = Settings()
