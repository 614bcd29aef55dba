"""Tests for DurablePublisher and the object stores."""

from __future__ import annotations

import threading
from pathlib import Path

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import ANY, Stubber

from provisioner.core.errors import PublishError
from provisioner.core.settings import StorageSettings
from provisioner.pipeline.publisher import (
    DurablePublisher,
    MemoryObjectStore,
    ObjectStore,
    S3ObjectStore,
)
from tests._support.builders import csv_rows


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "reviews-0_hotel-123.csv"
    path.write_bytes(csv_rows(10))
    return path


def _s3_client():
    return boto3.client(
        "s3",
        region_name="auto",
        endpoint_url="https://acct.r2.cloudflarestorage.com",
        aws_access_key_id="key",
        aws_secret_access_key="secret",
    )


class TestDurablePublisher:
    @pytest.mark.asyncio
    async def test_publishes_file_under_identifier(self, artifact: Path) -> None:
        store = MemoryObjectStore(bucket="reviews")

        result = await DurablePublisher(store).publish(artifact, "uploads/hotel-123.csv")

        assert store.puts == ["uploads/hotel-123.csv"]
        stored = store.objects["uploads/hotel-123.csv"]
        assert stored.body == csv_rows(10)
        assert stored.content_type == "text/csv"
        assert stored.content_disposition == 'attachment; filename="reviews-0_hotel-123.csv"'
        assert result.upload_identifier == "uploads/hotel-123.csv"
        assert result.bucket == "reviews"
        assert result.size_bytes == len(csv_rows(10))
        assert result.etag

    @pytest.mark.asyncio
    async def test_json_content_type(self, tmp_path: Path) -> None:
        path = tmp_path / "p-0_x.json"
        path.write_text("[]")
        store = MemoryObjectStore()
        result = await DurablePublisher(store).publish(path, "k.json")
        assert result.content_type == "application/json"

    @pytest.mark.asyncio
    async def test_second_publish_overwrites(self, artifact: Path) -> None:
        store = MemoryObjectStore()
        publisher = DurablePublisher(store)
        await publisher.publish(artifact, "k")
        artifact.write_bytes(b"changed")
        await publisher.publish(artifact, "k")
        assert store.puts == ["k", "k"]
        assert store.objects["k"].body == b"changed"

    @pytest.mark.asyncio
    async def test_missing_local_file(self, tmp_path: Path) -> None:
        store = MemoryObjectStore()
        with pytest.raises(PublishError, match="Could not read"):
            await DurablePublisher(store).publish(tmp_path / "nope.csv", "k")
        assert store.puts == []

    @pytest.mark.asyncio
    async def test_empty_identifier(self, artifact: Path) -> None:
        with pytest.raises(PublishError):
            await DurablePublisher(MemoryObjectStore()).publish(artifact, "")

    @pytest.mark.asyncio
    async def test_store_failure(self, artifact: Path) -> None:
        store = MemoryObjectStore(fail=ConnectionResetError("reset by peer"))
        with pytest.raises(PublishError) as exc_info:
            await DurablePublisher(store).publish(artifact, "k")
        err = exc_info.value
        assert err.context.upload_identifier == "k"
        assert err.retryable is True
        assert isinstance(err.cause, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_file_read_runs_off_the_event_loop(self, artifact: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        loop_thread = threading.get_ident()
        reader_threads: list[int] = []
        real_read_bytes = Path.read_bytes

        def recording_read_bytes(self: Path) -> bytes:
            reader_threads.append(threading.get_ident())
            return real_read_bytes(self)

        monkeypatch.setattr(Path, "read_bytes", recording_read_bytes)
        result = await DurablePublisher(MemoryObjectStore()).publish(artifact, "k")

        assert reader_threads
        assert loop_thread not in reader_threads
        assert result.size_bytes == len(csv_rows(10))


class TestS3ObjectStore:
    def test_is_object_store(self) -> None:
        assert isinstance(S3ObjectStore("b", client=_s3_client()), ObjectStore)

    def test_from_settings(self) -> None:
        settings = StorageSettings(
            _env_file=None,
            account_id="acct",
            access_key_id="key",
            secret_access_key="secret",
            bucket="reviews",
        )
        store = S3ObjectStore.from_settings(settings)
        assert store.bucket == "reviews"
        assert store.endpoint_url == "https://acct.r2.cloudflarestorage.com"
        assert store.client.meta.endpoint_url == "https://acct.r2.cloudflarestorage.com"

    @pytest.mark.asyncio
    async def test_put_object(self, artifact: Path) -> None:
        client = _s3_client()
        store = S3ObjectStore("reviews", client=client)
        with Stubber(client) as stub:
            stub.add_response(
                "put_object",
                {"ETag": '"abc"'},
                {
                    "Bucket": "reviews",
                    "Key": "uploads/hotel-123.csv",
                    "Body": ANY,
                    "ContentType": "text/csv",
                    "ContentDisposition": 'attachment; filename="reviews-0_hotel-123.csv"',
                },
            )
            result = await DurablePublisher(store).publish(artifact, "/uploads/hotel-123.csv")
            stub.assert_no_pending_responses()

        assert result.etag == '"abc"'
        assert result.bucket == "reviews"

    @pytest.mark.asyncio
    async def test_client_error_is_publish_error(self, artifact: Path) -> None:
        client = _s3_client()
        store = S3ObjectStore("reviews", client=client)
        with Stubber(client) as stub:
            stub.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
            with pytest.raises(PublishError) as exc_info:
                await DurablePublisher(store).publish(artifact, "k")

        assert isinstance(exc_info.value.cause, ClientError)
