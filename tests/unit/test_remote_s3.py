"""
Unit tests for the S3 transport.

A fake async client stands in for the aiobotocore S3 client; errors are
real botocore exceptions so the transport's error mapping is exercised.

Tests cover:
- put_object vs multipart uploads
- Multipart abort on part failure
- Bucket creation
- Listing with continuation and name filtering
- Error mapping
"""

from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from lofi.sync_server.config import MIB, S3Config
from lofi.sync_server.errors import ConnectivityError, NoBackupError, TransportError
from lofi.sync_server.remote.base import RemoteObjectHandle
from lofi.sync_server.remote.s3 import S3Transport

BASE = datetime(2026, 10, 1, tzinfo=timezone.utc)


def client_error(code, status, operation):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeBody:
    def __init__(self, data):
        self._data = data

    async def read(self):
        return self._data


class FakeS3Client:
    """Records calls; stores objects in a dict keyed by S3 key."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.objects: dict[str, tuple[bytes, datetime]] = {}
        self.bucket_exists = False
        self.fail: dict[str, Exception] = {}
        self.page_size = 1000
        self._parts: dict[str, list[bytes]] = {}

    def ops(self):
        return [op for op, _ in self.calls]

    def _record(self, op, kwargs):
        self.calls.append((op, kwargs))
        if op in self.fail:
            raise self.fail[op]

    async def head_bucket(self, **kwargs):
        self._record("head_bucket", kwargs)
        if not self.bucket_exists:
            raise client_error("404", 404, "HeadBucket")
        return {}

    async def create_bucket(self, **kwargs):
        self._record("create_bucket", kwargs)
        self.bucket_exists = True
        return {}

    async def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        self.objects[kwargs["Key"]] = (kwargs["Body"], BASE + timedelta(minutes=len(self.objects)))
        return {"ETag": '"etag"'}

    async def create_multipart_upload(self, **kwargs):
        self._record("create_multipart_upload", kwargs)
        self._parts["upload-1"] = []
        return {"UploadId": "upload-1"}

    async def upload_part(self, **kwargs):
        self._record("upload_part", kwargs)
        self._parts[kwargs["UploadId"]].append(kwargs["Body"])
        return {"ETag": f'"part-{kwargs["PartNumber"]}"'}

    async def complete_multipart_upload(self, **kwargs):
        self._record("complete_multipart_upload", kwargs)
        data = b"".join(self._parts.pop(kwargs["UploadId"]))
        self.objects[kwargs["Key"]] = (data, BASE + timedelta(minutes=len(self.objects)))
        return {}

    async def abort_multipart_upload(self, **kwargs):
        self._record("abort_multipart_upload", kwargs)
        self._parts.pop(kwargs["UploadId"], None)
        return {}

    async def get_object(self, **kwargs):
        self._record("get_object", kwargs)
        if kwargs["Key"] not in self.objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {"Body": FakeBody(self.objects[kwargs["Key"]][0])}

    async def list_objects_v2(self, **kwargs):
        self._record("list_objects_v2", kwargs)
        keys = sorted(k for k in self.objects if k.startswith(kwargs["Prefix"]))
        start = int(kwargs.get("ContinuationToken", "0"))
        page = keys[start:start + self.page_size]
        response = {
            "Contents": [
                {"Key": k, "Size": len(self.objects[k][0]), "LastModified": self.objects[k][1]}
                for k in page
            ],
            "IsTruncated": start + self.page_size < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response

    async def delete_object(self, **kwargs):
        self._record("delete_object", kwargs)
        self.objects.pop(kwargs["Key"], None)
        return {}


@pytest.fixture
def client():
    return FakeS3Client()


@pytest.fixture
def transport(client):
    return S3Transport(S3Config(bucket="books", prefix="lofi"), client=client)


class TestUpload:
    """Tests for upload()."""

    @pytest.mark.asyncio
    async def test_small_payload_put_object(self, transport, client):
        await transport.upload("latest-backup.json", b"{}")

        assert client.ops() == ["put_object"]
        assert client.calls[0][1]["Key"] == "lofi/latest-backup.json"
        assert client.calls[0][1]["Bucket"] == "books"

    @pytest.mark.asyncio
    async def test_large_payload_multipart(self, transport, client):
        payload = b"z" * (11 * MIB)

        await transport.upload("latest-backup.json", payload)

        assert client.ops() == [
            "create_multipart_upload",
            "upload_part",
            "upload_part",
            "upload_part",
            "complete_multipart_upload",
        ]
        parts = client.calls[-1][1]["MultipartUpload"]["Parts"]
        assert [p["PartNumber"] for p in parts] == [1, 2, 3]
        assert client.objects["lofi/latest-backup.json"][0] == payload

    @pytest.mark.asyncio
    async def test_part_failure_aborts(self, transport, client):
        client.fail["upload_part"] = client_error("InternalError", 500, "UploadPart")

        with pytest.raises(TransportError):
            await transport.upload("latest-backup.json", b"z" * (6 * MIB))

        assert client.ops()[-1] == "abort_multipart_upload"
        assert "lofi/latest-backup.json" not in client.objects

    @pytest.mark.asyncio
    async def test_no_prefix(self, client):
        transport = S3Transport(S3Config(bucket="books", prefix=""), client=client)

        await transport.upload("backup-meta.json", b"{}")

        assert "backup-meta.json" in client.objects


class TestEnsureFolder:
    """Tests for ensure_folder()."""

    @pytest.mark.asyncio
    async def test_creates_bucket_once(self, transport, client):
        await transport.ensure_folder()
        await transport.ensure_folder()

        assert client.ops().count("create_bucket") == 1

    @pytest.mark.asyncio
    async def test_location_constraint_outside_us_east_1(self, client):
        transport = S3Transport(S3Config(bucket="books", region="eu-west-1"), client=client)

        await transport.ensure_folder()

        create = [kwargs for op, kwargs in client.calls if op == "create_bucket"][0]
        assert create["CreateBucketConfiguration"] == {"LocationConstraint": "eu-west-1"}

    @pytest.mark.asyncio
    async def test_bucket_already_owned(self, transport, client):
        client.fail["create_bucket"] = client_error("BucketAlreadyOwnedByYou", 409, "CreateBucket")

        await transport.ensure_folder()

    @pytest.mark.asyncio
    async def test_create_failure_raises(self, transport, client):
        client.fail["create_bucket"] = client_error("TooManyBuckets", 400, "CreateBucket")

        with pytest.raises(TransportError):
            await transport.ensure_folder()


class TestErrors:
    """Tests for error mapping."""

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, transport, client):
        client.fail["put_object"] = EndpointConnectionError(endpoint_url="http://minio:9000")

        with pytest.raises(ConnectivityError):
            await transport.upload("latest-backup.json", b"{}")

    @pytest.mark.asyncio
    async def test_access_denied(self, transport, client):
        client.fail["head_bucket"] = client_error("403", 403, "HeadBucket")

        with pytest.raises(ConnectivityError):
            await transport.check_connectivity()

    @pytest.mark.asyncio
    async def test_missing_bucket_still_connected(self, transport):
        await transport.check_connectivity()

    @pytest.mark.asyncio
    async def test_missing_key(self, transport):
        with pytest.raises(NoBackupError):
            await transport.download("latest-backup.json")

    @pytest.mark.asyncio
    async def test_download(self, transport, client):
        await transport.upload("latest-backup.json", b'{"books":[]}')

        assert await transport.download("latest-backup.json") == b'{"books":[]}'


class TestListing:
    """Tests for list_backups() and list_all()."""

    @pytest.mark.asyncio
    async def test_pages_and_filters(self, transport, client):
        client.page_size = 2
        for name in (
            "backup-2026-10-01T00-00-00-000Z.json",
            "backup-2026-10-02T00-00-00-000Z.json",
            "latest-backup.json",
            "backup-meta.json",
            "readme.txt",
        ):
            await transport.upload(name, b"{}")

        backups = await transport.list_backups()
        everything = await transport.list_all()

        assert [h.name for h in backups] == [
            "backup-2026-10-02T00-00-00-000Z.json",
            "backup-2026-10-01T00-00-00-000Z.json",
        ]
        assert [h.name for h in everything][0] == "latest-backup.json"
        assert len(everything) == 3
        assert backups[0].id == "lofi/backup-2026-10-02T00-00-00-000Z.json"

    @pytest.mark.asyncio
    async def test_missing_bucket_lists_nothing(self, transport, client):
        client.fail["list_objects_v2"] = client_error("NoSuchBucket", 404, "ListObjectsV2")

        assert await transport.list_backups() == []


class TestDelete:
    """Tests for delete()."""

    @pytest.mark.asyncio
    async def test_delete(self, transport, client):
        await transport.upload("backup-2026-10-01T00-00-00-000Z.json", b"{}")
        handle = (await transport.list_backups())[0]

        assert await transport.delete(handle)
        assert client.objects == {}

    @pytest.mark.asyncio
    async def test_delete_failure_returns_false(self, transport, client):
        client.fail["delete_object"] = client_error("InternalError", 500, "DeleteObject")
        handle = RemoteObjectHandle(id="lofi/backup-x.json", name="backup-x.json", size=1, last_modified=BASE)

        assert not await transport.delete(handle)
