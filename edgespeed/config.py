"""Configuration loading helpers for the edge speedtest service."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

MIB = 1024 * 1024


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path


@dataclass
class ServerConfig:
    chunk_size: int = 1 * MIB
    drain_read_size: int = 64 * 1024


@dataclass
class ClientConfig:
    target_url: str = "http://127.0.0.1:8000"
    threads: int = 6
    duration_ms: int = 10000
    ping_count: int = 5
    ping_delay_ms: int = 200
    tick_interval_ms: int = 100
    upload_size: int = 2 * MIB
    retry_backoff_ms: int = 100
    probe_timeout_ms: int = 5000

    @property
    def duration(self) -> float:
        return self.duration_ms / 1000

    @property
    def ping_delay(self) -> float:
        return self.ping_delay_ms / 1000

    @property
    def tick_interval(self) -> float:
        return self.tick_interval_ms / 1000

    @property
    def retry_backoff(self) -> float:
        return self.retry_backoff_ms / 1000

    @property
    def probe_timeout(self) -> float:
        return self.probe_timeout_ms / 1000

    def validate(self) -> None:
        if self.threads < 1:
            raise ValueError("client.threads must be at least 1")
        if self.ping_count < 1:
            raise ValueError("client.ping_count must be at least 1")
        for name in ("duration_ms", "tick_interval_ms", "upload_size", "probe_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"client.{name} must be positive")
        for name in ("ping_delay_ms", "retry_backoff_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"client.{name} cannot be negative")


@dataclass
class SchedulerConfig:
    enabled: bool = False
    interval_minutes: int = 60


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    secret_key: str = "change-me"
    reverse_proxy_headers: bool = False


@dataclass
class ExportConfig:
    csv_name: str = "results.csv"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_name: str = "edgespeed.log"
    max_bytes: int = 5 * MIB
    backup_count: int = 5
    # Loggers held at WARNING; werkzeug writes one line per request.
    quiet_loggers: List[str] = field(default_factory=lambda: ["werkzeug"])


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    server: ServerConfig
    client: ClientConfig
    scheduler: SchedulerConfig
    web: WebConfig
    export: ExportConfig
    logging: LoggingConfig


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths", {})
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
    )

    config = AppConfig(
        root_dir=root_dir,
        paths=paths,
        server=ServerConfig(**data.get("server", {})),
        client=ClientConfig(**data.get("client", {})),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        web=WebConfig(**data.get("web", {})),
        export=ExportConfig(**data.get("export", {})),
        logging=LoggingConfig(**data.get("logging", {})),
    )

    if config.server.chunk_size <= 0 or config.server.drain_read_size <= 0:
        raise ValueError("server.chunk_size and server.drain_read_size must be positive")
    config.client.validate()

    return config
