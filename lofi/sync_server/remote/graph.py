"""
Microsoft Graph (OneDrive) transport for Lofi backups.

All operations target the signed-in user's personal OneDrive. The backup
folder lives in the drive root:

    /me/drive/root:/<folder>/latest-backup.json
    /me/drive/root:/<folder>/backup-<timestamp>.json
    /me/drive/root:/<folder>/backup-meta.json

Upload strategy:
    - Payloads below simple_upload_limit (4 MiB): one PUT to :/content
    - Larger payloads: createUploadSession, then sequential PUTs of
      chunk_size (5 MiB) with Content-Range headers against the
      pre-authenticated uploadUrl

Invariants:
    - Every request except upload-session chunks carries a fresh bearer token
    - 401/403 and network failures surface as ConnectivityError
    - Chunk ranges are strictly increasing; chunks are never parallel
    - A 404 on download surfaces as NoBackupError

How to change safely:
    - Keep chunk_size a multiple of 320 KiB (Graph requirement)
    - Test large uploads against a real drive before changing thresholds
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from ..config import MIB, GraphConfig
from ..errors import ConnectivityError, NoBackupError, TransportError
from .base import (
    RemoteObjectHandle,
    TokenProvider,
    is_historical_name,
    is_snapshot_name,
    newest_first,
)

logger = logging.getLogger(__name__)


def _parse_graph_time(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GraphTransport:
    """RemoteTransport backed by the Microsoft Graph drive API.

    Attributes:
        config: Graph configuration
        token_provider: Bearer credential source
        simple_upload_limit: Largest payload sent in one request (exclusive)
        chunk_size: Upload session chunk size

    Example:
        >>> transport = GraphTransport(GraphConfig(), StaticTokenProvider(token))
        >>> await transport.connect()
        >>> await transport.ensure_folder()
        >>> await transport.upload("latest-backup.json", payload)
    """

    def __init__(
        self,
        config: GraphConfig,
        token_provider: TokenProvider,
        simple_upload_limit: int = 4 * MIB,
        chunk_size: int = 5 * MIB,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Graph configuration
            token_provider: Bearer credential source
            simple_upload_limit: Direct-upload threshold in bytes
            chunk_size: Upload session chunk size in bytes
            client: Optional pre-built HTTP client (tests inject a mock transport)
        """
        self.config = config
        self.token_provider = token_provider
        self.simple_upload_limit = simple_upload_limit
        self.chunk_size = chunk_size
        self._client = client
        self._owns_client = client is None

    @property
    def folder_path(self) -> str:
        return f"/me/drive/root:/{quote(self.config.folder)}"

    def _item_path(self, name: str) -> str:
        return f"{self.folder_path}/{quote(name)}"

    async def connect(self) -> None:
        """Create the HTTP client if one was not injected."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, mapping connection and credential failures.

        Args:
            method: HTTP method
            url: Path relative to base_url, or an absolute URL
            authenticated: Whether to attach the bearer token

        Raises:
            ConnectivityError: Network failure or credential rejected
        """
        if self._client is None:
            await self.connect()

        if not url.startswith("http"):
            url = f"{self.config.base_url}{url}"

        headers = dict(kwargs.pop("headers", {}) or {})
        if authenticated:
            token = await self.token_provider.get_token()
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise ConnectivityError(f"Graph API unreachable: {e}", endpoint=self.config.base_url) from e

        if response.status_code in (401, 403):
            raise ConnectivityError(
                f"Graph API {response.status_code}: credential rejected",
                endpoint=self.config.base_url,
            )
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if not response.is_success:
            raise TransportError(
                f"Graph API {response.status_code}: {response.text}",
                status_code=response.status_code,
                operation=operation,
            )

    async def check_connectivity(self) -> None:
        """Verify the drive is reachable with the current credential."""
        response = await self._request("GET", "/me/drive")
        if not response.is_success:
            raise ConnectivityError(
                f"OneDrive not available ({response.status_code})",
                endpoint=self.config.base_url,
            )

    async def ensure_folder(self) -> None:
        """Create the backup folder in the drive root if missing."""
        response = await self._request("GET", self.folder_path)
        if response.is_success:
            return

        logger.info(
            "Backup folder not found, creating it",
            extra={"folder": self.config.folder, "lookup_status": response.status_code},
        )
        response = await self._request(
            "POST",
            "/me/drive/root/children",
            json={
                "name": self.config.folder,
                "folder": {},
                "@microsoft.graph.conflictBehavior": "fail",
            },
        )
        if response.status_code == 409:
            # Created by a concurrent request
            return
        self._raise_for_status(response, "create_folder")

    async def upload(self, name: str, payload: bytes) -> None:
        """Upload an object, switching to an upload session for large payloads."""
        if len(payload) < self.simple_upload_limit:
            response = await self._request(
                "PUT",
                f"{self._item_path(name)}:/content",
                headers={"Content-Type": "application/octet-stream"},
                content=payload,
            )
            self._raise_for_status(response, "upload")
            return

        await self._upload_session(name, payload)

    async def _upload_session(self, name: str, payload: bytes) -> None:
        """Upload through a resumable session in sequential chunks."""
        response = await self._request(
            "POST",
            f"{self._item_path(name)}:/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        )
        self._raise_for_status(response, "create_upload_session")
        upload_url = response.json()["uploadUrl"]

        total = len(payload)
        offset = 0
        while offset < total:
            end = min(offset + self.chunk_size, total)
            chunk = payload[offset:end]
            response = await self._request(
                "PUT",
                upload_url,
                authenticated=False,
                headers={
                    "Content-Length": str(len(chunk)),
                    "Content-Range": f"bytes {offset}-{end - 1}/{total}",
                },
                content=chunk,
            )
            self._raise_for_status(response, "upload_chunk")
            logger.debug(f"Uploaded {name} bytes {offset}-{end - 1}/{total}")
            offset = end

    async def download(self, name: str) -> bytes:
        """Download an object's content.

        Raises:
            NoBackupError: If the object does not exist
        """
        response = await self._request(
            "GET",
            f"{self._item_path(name)}:/content",
            follow_redirects=True,
        )
        if response.status_code == 404:
            raise NoBackupError(name)
        self._raise_for_status(response, "download")
        return response.content

    async def _list_children(self) -> list[RemoteObjectHandle]:
        handles: list[RemoteObjectHandle] = []
        url: str | None = f"{self.folder_path}:/children"
        params: dict[str, str] | None = {"$orderby": "lastModifiedDateTime desc"}

        while url:
            response = await self._request("GET", url, params=params)
            if response.status_code == 404:
                return []
            self._raise_for_status(response, "list")
            try:
                data = response.json()
                for item in data.get("value", []):
                    if "folder" in item:
                        continue
                    handles.append(
                        RemoteObjectHandle(
                            id=item["id"],
                            name=item["name"],
                            size=int(item.get("size", 0)),
                            last_modified=_parse_graph_time(item["lastModifiedDateTime"]),
                        )
                    )
                url = data.get("@odata.nextLink")
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise TransportError(
                    f"Malformed folder listing: {e!r}",
                    status_code=response.status_code,
                    operation="list",
                ) from e
            params = None  # nextLink already carries the query

        return handles

    async def list_backups(self) -> list[RemoteObjectHandle]:
        """Historical snapshots in the backup folder, newest first."""
        return newest_first([h for h in await self._list_children() if is_historical_name(h.name)])

    async def list_all(self) -> list[RemoteObjectHandle]:
        """Latest and historical snapshots, newest first."""
        return newest_first([h for h in await self._list_children() if is_snapshot_name(h.name)])

    async def delete(self, handle: RemoteObjectHandle) -> bool:
        """Delete a drive item; failures are logged, not raised."""
        try:
            response = await self._request("DELETE", f"/me/drive/items/{quote(handle.id)}")
        except ConnectivityError as e:
            logger.warning(f"Failed to delete {handle.name}: {e}")
            return False

        if not response.is_success:
            logger.warning(
                f"Failed to delete {handle.name}: Graph API {response.status_code}",
                extra={"item_id": handle.id},
            )
            return False
        return True
