"""
S3 transport for Lofi backups.

Self-hosted deployments point the backup folder at an S3 bucket (or a
MinIO endpoint) instead of OneDrive. The folder maps to a key prefix:

    s3://<bucket>/<prefix>/latest-backup.json
    s3://<bucket>/<prefix>/backup-<timestamp>.json
    s3://<bucket>/<prefix>/backup-meta.json

Upload strategy:
    - Payloads below simple_upload_limit: one put_object
    - Larger payloads: multipart upload with chunk_size parts, sent in
      order; the upload is aborted if any part fails

Invariants:
    - Connection and credential failures surface as ConnectivityError
    - Missing keys on download surface as NoBackupError
    - A failed multipart upload never leaves a half-written object

How to change safely:
    - S3 parts must be at least 5 MiB except the last one
    - Keep the key layout stable; restore tooling lists by prefix
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError, NoCredentialsError

from ..config import MIB, S3Config
from ..errors import ConnectivityError, NoBackupError, TransportError
from .base import RemoteObjectHandle, is_historical_name, is_snapshot_name, newest_first

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_CREDENTIAL_CODES = {"AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "403"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3Transport:
    """RemoteTransport backed by an S3 bucket.

    Example:
        >>> transport = S3Transport(S3Config(bucket="lofi-books-backups"))
        >>> await transport.connect()
        >>> await transport.upload("latest-backup.json", payload)
    """

    def __init__(
        self,
        config: S3Config,
        simple_upload_limit: int = 4 * MIB,
        chunk_size: int = 5 * MIB,
        client: Any | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: S3 configuration
            simple_upload_limit: Direct-upload threshold in bytes
            chunk_size: Multipart part size in bytes
            client: Optional pre-built S3 client (tests pass a fake)
        """
        self.config = config
        self.simple_upload_limit = simple_upload_limit
        self.chunk_size = chunk_size
        self._s3_client = client
        self._s3_ctx: Any | None = None

    def _key(self, name: str) -> str:
        if not self.config.prefix:
            return name
        return f"{self.config.prefix}/{name}"

    def _name(self, key: str) -> str:
        return key.rsplit("/", 1)[-1]

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return

        session = get_session()
        client_kwargs: dict[str, Any] = {
            "region_name": self.config.region,
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_ctx is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_ctx = None
            self._s3_client = None

    async def _call(self, operation: str, **kwargs: Any) -> Any:
        """Invoke one client operation, mapping botocore failures."""
        if self._s3_client is None:
            await self.connect()

        try:
            return await getattr(self._s3_client, operation)(**kwargs)
        except (EndpointConnectionError, NoCredentialsError) as e:
            raise ConnectivityError(f"S3 unreachable: {e}", endpoint=self.config.endpoint_url) from e
        except ClientError as e:
            code = _error_code(e)
            if code in _CREDENTIAL_CODES:
                raise ConnectivityError(f"S3 rejected credentials: {code}") from e
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise TransportError(
                f"S3 {operation} failed: {code}",
                status_code=status,
                operation=operation,
            ) from e
        except BotoCoreError as e:
            raise TransportError(f"S3 {operation} failed: {e}", operation=operation) from e

    async def check_connectivity(self) -> None:
        """Verify the endpoint answers with the configured credentials."""
        try:
            await self._call("head_bucket", Bucket=self.config.bucket)
        except TransportError as e:
            # A missing bucket is fine here; ensure_folder() creates it
            if e.status_code != 404:
                raise ConnectivityError(str(e), endpoint=self.config.endpoint_url) from e

    async def ensure_folder(self) -> None:
        """Create the bucket if it does not exist."""
        try:
            await self._call("head_bucket", Bucket=self.config.bucket)
            return
        except TransportError as e:
            logger.info(
                "Backup bucket not found, creating it",
                extra={"bucket": self.config.bucket, "lookup_status": e.status_code},
            )

        kwargs: dict[str, Any] = {"Bucket": self.config.bucket}
        if self.config.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.config.region}

        try:
            await self._call("create_bucket", **kwargs)
        except TransportError as e:
            cause = e.__cause__
            if isinstance(cause, ClientError) and _error_code(cause) in (
                "BucketAlreadyOwnedByYou",
                "BucketAlreadyExists",
            ):
                return
            raise

    async def upload(self, name: str, payload: bytes) -> None:
        """Write an object, using a multipart upload for large payloads."""
        key = self._key(name)
        if len(payload) < self.simple_upload_limit:
            await self._call(
                "put_object",
                Bucket=self.config.bucket,
                Key=key,
                Body=payload,
                ContentType="application/json",
            )
            return

        await self._multipart_upload(key, payload)

    async def _multipart_upload(self, key: str, payload: bytes) -> None:
        response = await self._call(
            "create_multipart_upload",
            Bucket=self.config.bucket,
            Key=key,
            ContentType="application/json",
        )
        upload_id = response["UploadId"]
        parts: list[dict[str, Any]] = []

        try:
            total = len(payload)
            offset = 0
            part_number = 1
            while offset < total:
                end = min(offset + self.chunk_size, total)
                result = await self._call(
                    "upload_part",
                    Bucket=self.config.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=payload[offset:end],
                )
                parts.append({"ETag": result["ETag"], "PartNumber": part_number})
                logger.debug(f"Uploaded {key} part {part_number} bytes {offset}-{end - 1}/{total}")
                offset = end
                part_number += 1

            await self._call(
                "complete_multipart_upload",
                Bucket=self.config.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception:
            logger.warning(f"Aborting multipart upload of {key}", extra={"upload_id": upload_id})
            await self._call(
                "abort_multipart_upload",
                Bucket=self.config.bucket,
                Key=key,
                UploadId=upload_id,
            )
            raise

    async def download(self, name: str) -> bytes:
        """Read an object.

        Raises:
            NoBackupError: If the key does not exist
        """
        try:
            response = await self._call("get_object", Bucket=self.config.bucket, Key=self._key(name))
        except TransportError as e:
            cause = e.__cause__
            if e.status_code == 404 or (
                isinstance(cause, ClientError) and _error_code(cause) in _MISSING_CODES
            ):
                raise NoBackupError(name) from e
            raise

        return await response["Body"].read()

    async def _list_objects(self) -> list[RemoteObjectHandle]:
        prefix = f"{self.config.prefix}/" if self.config.prefix else ""
        handles: list[RemoteObjectHandle] = []
        token: str | None = None

        while True:
            kwargs: dict[str, Any] = {"Bucket": self.config.bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                response = await self._call("list_objects_v2", **kwargs)
            except TransportError as e:
                if e.status_code == 404:
                    return []
                raise

            for obj in response.get("Contents", []):
                handles.append(
                    RemoteObjectHandle(
                        id=obj["Key"],
                        name=self._name(obj["Key"]),
                        size=int(obj.get("Size", 0)),
                        last_modified=obj["LastModified"],
                    )
                )

            if not response.get("IsTruncated"):
                break
            token = response.get("NextContinuationToken")

        return handles

    async def list_backups(self) -> list[RemoteObjectHandle]:
        """Historical snapshots under the prefix, newest first."""
        return newest_first([h for h in await self._list_objects() if is_historical_name(h.name)])

    async def list_all(self) -> list[RemoteObjectHandle]:
        """Latest and historical snapshots under the prefix, newest first."""
        return newest_first([h for h in await self._list_objects() if is_snapshot_name(h.name)])

    async def delete(self, handle: RemoteObjectHandle) -> bool:
        """Delete an object; failures are logged, not raised."""
        try:
            await self._call("delete_object", Bucket=self.config.bucket, Key=handle.id)
        except (ConnectivityError, TransportError) as e:
            logger.warning(f"Failed to delete {handle.name}: {e}", extra={"key": handle.id})
            return False
        return True
