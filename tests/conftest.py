"""Shared fixtures: an in-memory object store that follows S3's ETag rules."""

import asyncio
import hashlib
import itertools
import random
from collections import defaultdict
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Tuple

import pytest

from prefixload.config.settings import reset_settings
from prefixload.storage.base import (
    BaseStorageClient,
    PermanentStorageError,
    RemoteObjectState,
)
from prefixload.utils.retry import RetryPolicy


FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

MIB = 1024 * 1024


def reference_etag(data: bytes, part_size: Optional[int] = None) -> str:
    """ETag as S3 documents it, computed independently of prefixload.core.etag."""
    if part_size is None or len(data) <= part_size:
        return hashlib.md5(data).hexdigest()

    parts = [data[i:i + part_size] for i in range(0, len(data), part_size)]
    joined = b"".join(hashlib.md5(part).digest() for part in parts)
    return f"{hashlib.md5(joined).hexdigest()}-{len(parts)}"


def random_bytes(size: int, seed: int = 0) -> bytes:
    return random.Random(seed).randbytes(size)


def write_file(directory: Path, name: str, data: bytes) -> Path:
    path = directory / name
    path.write_bytes(data)
    return path


class FakeStorageClient(BaseStorageClient):
    """In-memory bucket with call counters and failure injection.

    Failures are queued per ``(operation, part_number)``; ``fail_always``
    makes an operation fail on every call.
    """

    def __init__(self, bucket: str = "test-bucket"):
        super().__init__(bucket)
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.sessions: Dict[str, Dict[int, bytes]] = {}
        self.session_keys: Dict[str, str] = {}
        self.calls: Dict[str, int] = defaultdict(int)
        self.part_calls: Dict[int, int] = defaultdict(int)
        self.aborted: List[str] = []
        self.completed_with: List[List[int]] = []
        self.part_finish_order: List[int] = []
        self.access_granted = True

        self.part_delays: Dict[int, float] = {}
        self.part_gate: Optional[asyncio.Event] = None
        self.corrupt_parts: set = set()
        self.corrupt_put = False
        self.corrupt_complete = False

        self.in_flight = 0
        self.max_in_flight = 0

        self._queued: Dict[Tuple[str, Optional[int]], List[BaseException]] = defaultdict(list)
        self._always: Dict[Tuple[str, Optional[int]], BaseException] = {}
        self._ids = itertools.count(1)

    # Test helpers

    def seed(self, key: str, data: bytes, part_size: Optional[int] = None, etag: Optional[str] = None):
        """Place an object as if it had been uploaded with ``part_size`` parts."""
        self.objects[key] = (data, etag or reference_etag(data, part_size))

    def fail(self, operation: str, error: BaseException, times: int = 1, part_number: Optional[int] = None):
        self._queued[(operation, part_number)].extend([error] * times)

    def fail_always(self, operation: str, error: BaseException, part_number: Optional[int] = None):
        self._always[(operation, part_number)] = error

    @property
    def open_sessions(self) -> List[str]:
        return list(self.sessions)

    def _maybe_fail(self, operation: str, part_number: Optional[int] = None):
        key = (operation, part_number)
        if key in self._always:
            raise self._always[key]
        if self._queued[key]:
            raise self._queued[key].pop(0)

    # BaseStorageClient

    async def head_object(self, key: str) -> Optional[RemoteObjectState]:
        self.calls["head_object"] += 1
        self._maybe_fail("head_object")
        if key not in self.objects:
            return None
        data, etag = self.objects[key]
        return RemoteObjectState(key=key, etag=etag, size_bytes=len(data))

    async def put_object(self, key: str, body: BinaryIO, size: int) -> str:
        self.calls["put_object"] += 1
        self._maybe_fail("put_object")
        data = body.read()
        if len(data) != size:
            raise PermanentStorageError("IncompleteBody", code="IncompleteBody", status=400)

        etag = reference_etag(data)
        self.objects[key] = (data, etag)
        return "0" * 32 if self.corrupt_put else etag

    async def create_multipart_upload(self, key: str) -> str:
        self.calls["create_multipart_upload"] += 1
        self._maybe_fail("create_multipart_upload")
        upload_id = f"upload-{next(self._ids)}"
        self.sessions[upload_id] = {}
        self.session_keys[upload_id] = key
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        self.calls["upload_part"] += 1
        self.part_calls[part_number] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.part_gate is not None:
                await self.part_gate.wait()
            await asyncio.sleep(self.part_delays.get(part_number, 0))
            self._maybe_fail("upload_part", part_number)

            if upload_id not in self.sessions:
                raise PermanentStorageError("NoSuchUpload", code="NoSuchUpload", status=404)
            self.sessions[upload_id][part_number] = data
            self.part_finish_order.append(part_number)
        finally:
            self.in_flight -= 1

        if part_number in self.corrupt_parts:
            return "f" * 32
        return hashlib.md5(data).hexdigest()

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: List[Tuple[int, str]]
    ) -> str:
        self.calls["complete_multipart_upload"] += 1
        self._maybe_fail("complete_multipart_upload")

        uploaded = self.sessions.get(upload_id)
        if uploaded is None:
            raise PermanentStorageError("NoSuchUpload", code="NoSuchUpload", status=404)

        numbers = [number for number, _ in parts]
        if numbers != sorted(set(numbers)):
            raise PermanentStorageError("InvalidPartOrder", code="InvalidPartOrder", status=400)
        for number, etag in parts:
            if number not in uploaded or hashlib.md5(uploaded[number]).hexdigest() != etag:
                raise PermanentStorageError("InvalidPart", code="InvalidPart", status=400)

        self.completed_with.append(numbers)
        digests = b"".join(hashlib.md5(uploaded[number]).digest() for number in numbers)
        etag = f"{hashlib.md5(digests).hexdigest()}-{len(numbers)}"

        self.objects[key] = (b"".join(uploaded[number] for number in numbers), etag)
        del self.sessions[upload_id]
        return f"{'0' * 32}-{len(numbers)}" if self.corrupt_complete else etag

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self.calls["abort_multipart_upload"] += 1
        self._maybe_fail("abort_multipart_upload")
        self.sessions.pop(upload_id, None)
        self.aborted.append(upload_id)

    async def check_bucket_access(self) -> bool:
        self.calls["check_bucket_access"] += 1
        return self.access_granted


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point every settings path at the test's temp dir and clear cached settings."""
    config_dir = tmp_path / "prefixload-config"
    monkeypatch.setenv("PREFIXLOAD_CONFIG_FILE", str(config_dir / "config.yml"))
    monkeypatch.setenv("PREFIXLOAD_CREDENTIALS_FILE", str(config_dir / "credentials.yml"))
    monkeypatch.delenv("PREFIXLOAD_ACCESS_KEY", raising=False)
    monkeypatch.delenv("PREFIXLOAD_SECRET_KEY", raising=False)
    monkeypatch.delenv("PREFIXLOAD_REGION", raising=False)
    monkeypatch.delenv("PREFIXLOAD_LOG_FILE_PATH", raising=False)
    reset_settings()
    yield config_dir
    reset_settings()


@pytest.fixture
def storage():
    return FakeStorageClient()


@pytest.fixture
def backup_dir(tmp_path):
    directory = tmp_path / "backups"
    directory.mkdir()
    return directory
