"""Durable job store backing the upload queue.

Holds the in-memory job list and mirrors it to a KeyValueStore. Storage
faults are logged and absorbed: the in-memory list stays authoritative for
the rest of the process, and a lost write is repaired by the next persist.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from wardrobe_sync.core.logging import get_logger
from wardrobe_sync.jobs.models import UploadJob, UploadKind

logger = get_logger(__name__)

QUEUE_KEY = "fitmatch.uploadQueue.v1"

DEFAULT_BUCKETS = {
    UploadKind.WARDROBE.value: "wardrobe-images",
    UploadKind.SCAN.value: "scan-images",
}


def migrate_record(raw: Dict[str, Any], default_buckets: Dict[str, str] = DEFAULT_BUCKETS) -> Dict[str, Any]:
    """Normalize a persisted record to the current job schema.

    Early versions keyed jobs by ``itemId`` and only queued wardrobe images,
    so those records carry no ``kind`` or ``bucket``.
    """
    record = dict(raw)
    legacy_id = record.pop("itemId", None)
    if not record.get("id") and legacy_id:
        record["id"] = legacy_id
    kind = record.get("kind") or UploadKind.WARDROBE.value
    record["kind"] = kind
    if not record.get("bucket"):
        record["bucket"] = default_buckets.get(kind, DEFAULT_BUCKETS[UploadKind.WARDROBE.value])
    record.setdefault("attempts", 0)
    return record


class JobStore:
    def __init__(self, kv, key: str = QUEUE_KEY, default_buckets: Optional[Dict[str, str]] = None):
        self._kv = kv
        self._key = key
        self._default_buckets = default_buckets or DEFAULT_BUCKETS
        self.jobs: List[UploadJob] = []
        self._loaded = False
        self._write_lock: Optional[asyncio.Lock] = None
        self._write_lock_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        """Read the persisted jobs once per process. Later calls are no-ops."""
        if self._loaded:
            return
        try:
            raw = await self._kv.get_item(self._key)
            self.jobs = self._deserialize(raw) if raw else []
        except Exception as e:
            logger.error("Failed to load upload queue", key=self._key, error=str(e))
            self.jobs = []
        self._loaded = True

    async def persist(self) -> None:
        """Write the current job list.

        Writes are serialized and the snapshot is taken inside the lock, so the
        last caller's state is the last thing written.
        """
        async with self._lock():
            try:
                payload = json.dumps([job.model_dump(mode="json") for job in self.jobs])
                await self._kv.set_item(self._key, payload)
            except Exception as e:
                logger.error("Failed to persist upload queue", key=self._key, error=str(e))

    def _lock(self) -> asyncio.Lock:
        # A Lock binds to the loop it first waits on; keep one per loop
        loop = asyncio.get_running_loop()
        if self._write_lock is None or self._write_lock_loop is not loop:
            self._write_lock = asyncio.Lock()
            self._write_lock_loop = loop
        return self._write_lock

    def _deserialize(self, raw: str) -> List[UploadJob]:
        try:
            records = json.loads(raw)
        except ValueError as e:
            logger.error("Upload queue state is not valid JSON, starting empty", error=str(e))
            return []
        if not isinstance(records, list):
            logger.error("Upload queue state is not a list, starting empty")
            return []

        jobs: List[UploadJob] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                jobs.append(UploadJob.model_validate(migrate_record(record, self._default_buckets)))
            except ValidationError as e:
                logger.warning(
                    "Dropping unreadable upload job",
                    job_id=record.get("id") or record.get("itemId"),
                    error=str(e),
                )
        return jobs

    # -- lookups and mutations, used only by the queue ----------------------

    def find(self, job_id: str) -> Optional[UploadJob]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def contains(self, job_id: str) -> bool:
        return self.find(job_id) is not None

    def remove(self, job_id: str) -> bool:
        before = len(self.jobs)
        self.jobs = [j for j in self.jobs if j.id != job_id]
        return len(self.jobs) != before

    def append(self, job: UploadJob) -> None:
        self.jobs.append(job)

    def has_kind(self, kind: UploadKind) -> bool:
        return any(j.kind == kind for j in self.jobs)

    def __len__(self) -> int:
        return len(self.jobs)
