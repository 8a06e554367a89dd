"""
Pytest configuration and in-memory fakes for the external collaborators.
"""
from typing import Dict, List, Optional, Set

import pytest

from wardrobe_sync.db.guarded_updates import RecordStore
from wardrobe_sync.errors import UploadError
from wardrobe_sync.jobs import telemetry
from wardrobe_sync.jobs.job_store import JobStore
from wardrobe_sync.jobs.models import UploadKind, UploadRequest
from wardrobe_sync.jobs.upload_queue import UploadQueue
from wardrobe_sync.storage.base import FileSystem, KeyValueStore, ObjectStore


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self.data: Dict[str, str] = {}
        self.get_calls = 0
        self.set_calls = 0
        self.fail_get = False
        self.fail_set = False

    async def get_item(self, key: str) -> Optional[str]:
        self.get_calls += 1
        if self.fail_get:
            raise OSError("storage unavailable")
        return self.data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.set_calls += 1
        if self.fail_set:
            raise OSError("disk full")
        self.data[key] = value


class MemoryFileSystem(FileSystem):
    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.dirs: Set[str] = set()
        self.fail_delete: Set[str] = set()
        self.deleted: List[str] = []

    def add_file(self, uri: str, data: bytes = b"\xff\xd8jpeg-bytes") -> str:
        self.files[uri] = data
        return uri

    async def exists(self, uri: str) -> bool:
        return uri in self.files or uri in self.dirs

    async def read_directory(self, dir_uri: str) -> List[str]:
        names = []
        for uri in self.files:
            if uri.startswith(dir_uri):
                rest = uri[len(dir_uri):]
                if "/" not in rest:
                    names.append(rest)
        return sorted(names)

    async def delete(self, uri: str) -> None:
        if uri in self.fail_delete:
            raise PermissionError(f"cannot delete {uri}")
        if self.files.pop(uri, None) is not None:
            self.deleted.append(uri)

    async def read_bytes(self, uri: str) -> bytes:
        if uri not in self.files:
            raise FileNotFoundError(uri)
        return self.files[uri]

    async def copy(self, src_uri: str, dst_uri: str) -> None:
        self.files[dst_uri] = await self.read_bytes(src_uri)

    async def make_directory(self, dir_uri: str) -> None:
        self.dirs.add(dir_uri)


class FakeObjectStore(ObjectStore):
    def __init__(self):
        self.objects: Dict[tuple, bytes] = {}
        self.uploads: List[dict] = []
        self.removed: List[tuple] = []
        self.fail_uploads = 0

    async def upload(self, bucket, path, data, content_type, upsert=True, cache_control=None):
        self.uploads.append({
            "bucket": bucket,
            "path": path,
            "content_type": content_type,
            "upsert": upsert,
            "cache_control": cache_control,
        })
        if self.fail_uploads > 0:
            self.fail_uploads -= 1
            raise UploadError("Upload failed: 503", bucket=bucket, path=path)
        if (bucket, path) in self.objects and not upsert:
            raise UploadError("Upload failed: duplicate", bucket=bucket, path=path)
        self.objects[(bucket, path)] = data

    def get_public_url(self, bucket, path):
        return f"https://test.supabase.co/storage/v1/object/public/{bucket}/{path}"

    async def remove(self, bucket, paths):
        for path in paths:
            self.removed.append((bucket, path))
            self.objects.pop((bucket, path), None)


class FakeRecordStore(RecordStore):
    """Applies guarded updates to in-memory rows, recording every call."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, dict]] = {"wardrobe_items": {}, "recent_checks": {}}
        self.calls: List[tuple] = []

    def add_row(self, table: str, row_id: str, **values) -> dict:
        row = {"id": row_id, **values}
        self.tables.setdefault(table, {})[row_id] = row
        return row

    async def update_guarded(self, table, row_id, column, new_value, expected_value,
                             status_column=None, required_status=None):
        self.calls.append((table, row_id, column, new_value, expected_value, status_column, required_status))
        row = self.tables.get(table, {}).get(row_id)
        if row is None or row.get(column) != expected_value:
            return 0
        if status_column is not None and row.get(status_column) != required_status:
            return 0
        row[column] = new_value
        return 1


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def fs() -> MemoryFileSystem:
    return MemoryFileSystem()


@pytest.fixture
def objects() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def records() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def store(kv) -> JobStore:
    return JobStore(kv)


@pytest.fixture
def queue(store, fs, clock) -> UploadQueue:
    return UploadQueue(store, fs, clock=clock, idle_debounce_ms=0)


def make_request(
    id: str = "item-1",
    kind: UploadKind = UploadKind.WARDROBE,
    local_path: str = "file://a.jpg",
    owner_id: str = "user-1",
) -> UploadRequest:
    bucket = "scan-images" if kind == UploadKind.SCAN else "wardrobe-images"
    return UploadRequest(
        kind=kind,
        id=id,
        owner_id=owner_id,
        local_path=local_path,
        expected_remote_ref=local_path,
        bucket=bucket,
        storage_path=f"{owner_id}/{id}.jpg",
    )


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture
def events(monkeypatch):
    """Telemetry events emitted during the test, as (event, job_id, extra)."""
    recorded = []

    def record(event, job_id, **extra):
        recorded.append((event, job_id, extra))

    monkeypatch.setattr(telemetry, "log_upload_event", record)
    return recorded
