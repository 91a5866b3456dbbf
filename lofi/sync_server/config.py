"""
Configuration management for the Lofi sync server.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Backup timings default to the behaviour users already rely on
      (30s debounce, 5 minute safety net, 3 historical snapshots)
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change remote object names through configuration
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


class RemoteBackend(Enum):
    """Supported remote object stores."""

    GRAPH = "graph"
    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class GraphConfig:
    """Microsoft Graph (OneDrive) configuration.

    Attributes:
        base_url: Graph API root
        folder: Backup folder name in the drive root
        timeout_seconds: Per-request timeout
        access_token: Optional bootstrap token (normally registered by the client)
    """

    base_url: str = "https://graph.microsoft.com/v1.0"
    folder: str = "Lofi Books"
    timeout_seconds: float = 60.0
    access_token: str | None = None

    @classmethod
    def from_env(cls) -> GraphConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0"),
            folder=os.getenv("GRAPH_BACKUP_FOLDER", "Lofi Books"),
            timeout_seconds=float(os.getenv("GRAPH_TIMEOUT_SECONDS", "60")),
            access_token=os.getenv("GRAPH_ACCESS_TOKEN"),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for snapshot storage.

    Attributes:
        bucket: S3 bucket name (the "backup folder")
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix inside the bucket
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "lofi-books-backups"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "lofi-books"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "lofi-books-backups"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", "lofi-books"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the canonical database
        db_filename: Canonical SQLite file name
        legacy_db_filename: File name of the superseded local-only database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/data"
    db_filename: str = "lofi-books.db"
    legacy_db_filename: str = "MoBookDB.sqlite"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename

    @property
    def legacy_db_path(self) -> Path:
        return Path(self.data_dir) / self.legacy_db_filename

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/data"),
            db_filename=os.getenv("DB_FILENAME", "lofi-books.db"),
            legacy_db_filename=os.getenv("LEGACY_DB_FILENAME", "MoBookDB.sqlite"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Backup scheduling and upload configuration.

    Attributes:
        owner_identity: Account whose data this session backs up
        debounce_seconds: Quiet period after the last mutation
        periodic_interval_seconds: Safety-net backup interval
        max_backups: Historical snapshots kept after rotation
        success_reset_seconds: Delay before "success" reverts to "idle"
        simple_upload_limit: Payloads below this size use one direct write
        chunk_size: Chunk size for upload sessions
    """

    owner_identity: str = ""
    debounce_seconds: float = 30.0
    periodic_interval_seconds: float = 300.0
    max_backups: int = 3
    success_reset_seconds: float = 3.0
    simple_upload_limit: int = 4 * MIB
    chunk_size: int = 5 * MIB

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            owner_identity=os.getenv("BACKUP_OWNER", ""),
            debounce_seconds=float(os.getenv("BACKUP_DEBOUNCE_SECONDS", "30")),
            periodic_interval_seconds=float(os.getenv("BACKUP_INTERVAL_SECONDS", "300")),
            max_backups=int(os.getenv("BACKUP_MAX_HISTORY", "3")),
            success_reset_seconds=float(os.getenv("BACKUP_SUCCESS_RESET_SECONDS", "3")),
            simple_upload_limit=int(os.getenv("BACKUP_SIMPLE_UPLOAD_LIMIT", str(4 * MIB))),
            chunk_size=int(os.getenv("BACKUP_CHUNK_SIZE", str(5 * MIB))),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "http://localhost:5173")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "3001")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        remote_backend: Which remote object store to use
        graph: Graph configuration (if remote_backend is GRAPH)
        s3: S3 configuration (if remote_backend is S3)
        storage: Local storage configuration
        backup: Backup scheduling configuration
        http: HTTP server configuration
        observability: Logging configuration
    """

    remote_backend: RemoteBackend = RemoteBackend.GRAPH
    graph: GraphConfig = field(default_factory=GraphConfig)
    s3: S3Config = field(default_factory=S3Config)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("REMOTE_BACKEND", "graph").lower()
        try:
            remote_backend = RemoteBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid REMOTE_BACKEND '{backend_str}'. Must be one of: graph, s3, memory"
            )

        config = cls(
            remote_backend=remote_backend,
            graph=GraphConfig.from_env(),
            s3=S3Config.from_env(),
            storage=StorageConfig.from_env(),
            backup=BackupConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.remote_backend == RemoteBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when REMOTE_BACKEND=s3")
        if self.remote_backend == RemoteBackend.GRAPH and not self.graph.folder:
            raise ValueError("GRAPH_BACKUP_FOLDER is required when REMOTE_BACKEND=graph")

        if self.backup.max_backups < 0:
            raise ValueError("BACKUP_MAX_HISTORY must not be negative")
        if self.backup.debounce_seconds <= 0 or self.backup.periodic_interval_seconds <= 0:
            raise ValueError("Backup debounce and interval must be positive")
        if self.backup.chunk_size <= 0 or self.backup.simple_upload_limit <= 0:
            raise ValueError("Upload thresholds must be positive")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "remote_backend": self.remote_backend.value,
                "graph_folder": self.graph.folder
                if self.remote_backend == RemoteBackend.GRAPH
                else None,
                "s3_bucket": self.s3.bucket if self.remote_backend == RemoteBackend.S3 else None,
                "data_dir": self.storage.data_dir,
                "debounce_seconds": self.backup.debounce_seconds,
                "interval_seconds": self.backup.periodic_interval_seconds,
                "max_backups": self.backup.max_backups,
                "log_level": self.observability.log_level,
            },
        )
