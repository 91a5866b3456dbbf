"""
Remote object store backends for Lofi backups.

Backends:
    - GraphTransport: the user's OneDrive via Microsoft Graph (default)
    - S3Transport: an S3 bucket or MinIO endpoint
    - InMemoryTransport: tests and local development
"""

from .base import (
    LATEST_BACKUP_NAME,
    METADATA_NAME,
    RemoteObjectHandle,
    RemoteTransport,
    StaticTokenProvider,
    TokenProvider,
    create_transport,
    historical_backup_name,
    is_historical_name,
    is_snapshot_name,
)
from .graph import GraphTransport
from .memory import InMemoryTransport
from .s3 import S3Transport

__all__ = [
    "LATEST_BACKUP_NAME",
    "METADATA_NAME",
    "GraphTransport",
    "InMemoryTransport",
    "RemoteObjectHandle",
    "RemoteTransport",
    "S3Transport",
    "StaticTokenProvider",
    "TokenProvider",
    "create_transport",
    "historical_backup_name",
    "is_historical_name",
    "is_snapshot_name",
]
