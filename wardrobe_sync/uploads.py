"""Local-first image storage with background sync to Supabase.

1. Images are saved into a managed local directory immediately.
2. The upload to Supabase Storage is queued and runs in the background.
3. Once uploaded, the record's image_uri is switched to the public URL
   through a guarded update, so a stale job can never clobber newer state.
"""

import re
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, Tuple, Union

from wardrobe_sync.core.logging import get_logger
from wardrobe_sync.db.guarded_updates import (
    RecordStore,
    update_recent_check_image_uri_guarded,
    update_wardrobe_item_image_uri_guarded,
)
from wardrobe_sync.errors import LocalStorageError
from wardrobe_sync.io.image_reader import guess_ext, read_upload_bytes
from wardrobe_sync.jobs import telemetry
from wardrobe_sync.jobs.models import UploadJob, UploadKind, UploadRequest
from wardrobe_sync.jobs.upload_queue import UploadQueue
from wardrobe_sync.storage.base import FileSystem, ObjectStore
from wardrobe_sync.storage.local_files import FILE_SCHEME, ManagedDirs
from wardrobe_sync.storage.orphan_sweep import OrphanSweeper, collect_protected_uris
from wardrobe_sync.storage.recent_uris import RecentUriGuard

logger = get_logger(__name__)

_VALID_FILE_URI = re.compile(r"^file://[^?#]+\.(jpg|jpeg|png|gif|webp|heic)$", re.IGNORECASE)


def is_cloud_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def is_local_uri(url: str) -> bool:
    return url.startswith(FILE_SCHEME)


def image_uri_for_render(image_uri: str, updated_at: Union[int, str, None] = None) -> str:
    """Append a cache-busting ``v=`` param to remote URLs. Render-time only.

    Never store the result: the database must keep the bare URL or the
    guarded update would stop matching.
    """
    if not is_cloud_url(image_uri) or not updated_at:
        return image_uri
    if isinstance(updated_at, str):
        version = int(datetime.fromisoformat(updated_at.replace("Z", "+00:00")).timestamp() * 1000)
    else:
        version = int(updated_at)
    separator = "&" if "?" in image_uri else "?"
    return f"{image_uri}{separator}v={version}"


def storage_path_for(kind: UploadKind, user_id: str, record_id: str, ext: str) -> str:
    """Deterministic object path, so re-running a job overwrites instead of duplicating."""
    if kind == UploadKind.SCAN:
        return f"{user_id}/scans/{record_id}.{ext}"
    return f"{user_id}/{record_id}.{ext}"


class BackgroundUploads:
    """Wires local image storage, the upload queue and guarded reconciliation."""

    def __init__(
        self,
        queue: UploadQueue,
        objects: ObjectStore,
        records: RecordStore,
        fs: FileSystem,
        dirs: ManagedDirs,
        guard: RecentUriGuard,
        sweeper: OrphanSweeper,
        wardrobe_bucket: str = "wardrobe-images",
        scan_bucket: str = "scan-images",
        compress_images: bool = False,
        compress_max_size: Tuple[int, int] = (1600, 2000),
        compress_quality: int = 92,
        cache_control: Optional[str] = "3600",
    ):
        self.queue = queue
        self._objects = objects
        self._records = records
        self._fs = fs
        self._dirs = dirs
        self.guard = guard
        self._sweeper = sweeper
        self._buckets = {UploadKind.WARDROBE: wardrobe_bucket, UploadKind.SCAN: scan_bucket}
        self._compress = compress_images
        self._compress_max_size = compress_max_size
        self._compress_quality = compress_quality
        self._cache_control = cache_control

    def bucket_for(self, kind: UploadKind) -> str:
        return self._buckets[UploadKind(kind)]

    async def initialize(self) -> None:
        """Call once on app start, after credentials and the user are known."""
        logger.info("Initializing background uploads")
        await self.queue.initialize(self.upload_worker)

    # ------------------------------------------------------------------
    # Upload worker
    # ------------------------------------------------------------------

    async def upload_worker(self, job: UploadJob) -> None:
        """Upload one job's file and reconcile the owning row. Raises on upload failure."""
        logger.info("Processing upload job", job_id=job.id, kind=job.kind.value, bucket=job.bucket)

        payload = await read_upload_bytes(
            self._fs,
            job.local_path,
            compress=self._compress,
            max_size=self._compress_max_size,
            quality=self._compress_quality,
        )
        logger.debug("File read", job_id=job.id, size=len(payload.data))

        # Upsert: a rerun of the same job overwrites the same object
        await self._objects.upload(
            job.bucket,
            job.storage_path,
            payload.data,
            content_type=payload.content_type,
            upsert=True,
            cache_control=self._cache_control,
        )
        public_url = self._objects.get_public_url(job.bucket, job.storage_path)

        if job.kind == UploadKind.SCAN:
            updated = await update_recent_check_image_uri_guarded(
                self._records, job.id, public_url, job.expected_remote_ref
            )
        else:
            updated = await update_wardrobe_item_image_uri_guarded(
                self._records, job.id, public_url, job.expected_remote_ref
            )

        if updated > 0:
            telemetry.log_upload_event(
                telemetry.UPLOAD_SUCCEEDED, job.id, kind=job.kind.value, public_url=public_url
            )
        else:
            # Row deleted, image replaced, or scan un-saved since enqueue
            telemetry.log_upload_event(
                telemetry.UPLOAD_STALE_IGNORED, job.id, kind=job.kind.value, reason="no_matching_row"
            )

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    async def queue_upload(self, kind: UploadKind, record_id: str, local_uri: str, user_id: str) -> None:
        kind = UploadKind(kind)
        ext = guess_ext(local_uri) or "jpg"
        await self.queue.enqueue(UploadRequest(
            kind=kind,
            id=record_id,
            owner_id=user_id,
            local_path=local_uri,
            expected_remote_ref=local_uri,
            bucket=self.bucket_for(kind),
            storage_path=storage_path_for(kind, user_id, record_id, ext),
        ))
        self.queue.kick()

    async def queue_wardrobe_upload(self, item_id: str, local_uri: str, user_id: str) -> None:
        logger.info("Queuing wardrobe upload", item_id=item_id, local_uri=local_uri)
        await self.queue_upload(UploadKind.WARDROBE, item_id, local_uri, user_id)

    async def queue_scan_upload(self, check_id: str, local_uri: str, user_id: str) -> None:
        logger.info("Queuing scan upload", check_id=check_id, local_uri=local_uri)
        await self.queue_upload(UploadKind.SCAN, check_id, local_uri, user_id)

    # ------------------------------------------------------------------
    # Local files
    # ------------------------------------------------------------------

    async def save_image_locally(
        self,
        temp_uri: str,
        user_id: str,
        kind: UploadKind = UploadKind.WARDROBE,
        fixed_name: Optional[str] = None,
    ) -> str:
        """Copy a camera/gallery image into the kind's managed directory.

        Scans pass ``fixed_name`` (the check id) for a deterministic file name;
        wardrobe images get a unique one. The new URI is tracked by the
        recent-URI guard so the orphan sweep leaves it alone until enqueued.
        """
        kind = UploadKind(kind)
        directory = self._dirs.dir_for(kind)
        if fixed_name:
            filename = f"{fixed_name}.jpg"
        else:
            filename = f"{user_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}.jpg"
        permanent_uri = f"{directory}{filename}"

        try:
            await self._fs.make_directory(directory)
            if await self._fs.exists(permanent_uri):
                logger.info("Overwriting existing local image", uri=permanent_uri)
                await self._fs.delete(permanent_uri)
            await self._fs.copy(temp_uri, permanent_uri)
        except Exception as e:
            logger.error("Failed to save image locally", temp_uri=temp_uri, error=str(e))
            raise LocalStorageError("Failed to save image locally") from e

        self.guard.track(permanent_uri)
        logger.info("Image saved locally", uri=permanent_uri)
        return permanent_uri

    async def delete_local_image(self, local_uri: str) -> None:
        """Delete a local image. Failures are logged, never raised."""
        if not (self._dirs.is_managed(local_uri) or is_local_uri(local_uri)):
            return
        try:
            await self._fs.delete(local_uri)
            logger.info("Deleted local image", uri=local_uri)
        except Exception as e:
            logger.error("Failed to delete local image", uri=local_uri, error=str(e))

    async def check_local_file_integrity(self, local_uri: Optional[str], context: str) -> bool:
        """False when a referenced local file is missing from disk."""
        if not local_uri or not is_local_uri(local_uri):
            return True
        try:
            if await self._fs.exists(local_uri):
                return True
        except Exception as e:
            logger.error("INTEGRITY: failed to check file", context=context, uri=local_uri, error=str(e))
            return False
        logger.warning(
            "INTEGRITY: local file missing",
            context=context,
            uri=local_uri,
            detail="File referenced by DB but not found on disk",
        )
        return False

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def prepare_scan_for_save(self, check_id: str, current_uri: str, user_id: str) -> str:
        """Return the permanent URI to store on the scan row before saving it."""
        if self._dirs.is_managed(current_uri, UploadKind.SCAN):
            return current_uri
        if is_cloud_url(current_uri):
            return current_uri
        return await self.save_image_locally(current_uri, user_id, UploadKind.SCAN, check_id)

    async def complete_scan_save(self, check_id: str, local_uri: str, user_id: str) -> None:
        """Queue the upload. Call after the row has outcome = 'saved_to_revisit'."""
        if is_local_uri(local_uri):
            await self.queue_scan_upload(check_id, local_uri, user_id)
        else:
            logger.info("Scan already synced, no upload needed", check_id=check_id)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup_item_storage(
        self, record_id: str, image_uri: Optional[str] = None, kind: UploadKind = UploadKind.WARDROBE
    ) -> None:
        """Cancel the pending upload and drop the local file. Call before deleting the row."""
        logger.info("Cleaning up storage", kind=UploadKind(kind).value, record_id=record_id)
        await self.queue.cancel(record_id)

        if not image_uri or not is_local_uri(image_uri):
            return
        if ".." in image_uri or "/./" in image_uri:
            logger.warning("Skipping delete, URI contains path traversal", uri=image_uri)
            return
        if not _VALID_FILE_URI.match(image_uri):
            logger.warning("Skipping delete, invalid file URI format", uri=image_uri)
            return
        await self.delete_local_image(image_uri)

    async def delete_remote_image(
        self, image_url: str, user_id: str, kind: UploadKind = UploadKind.WARDROBE
    ) -> None:
        """Best-effort removal of an uploaded object given its public URL."""
        kind = UploadKind(kind)
        filename = image_url.split("?")[0].rstrip("/").split("/")[-1]
        path = f"{user_id}/scans/{filename}" if kind == UploadKind.SCAN else f"{user_id}/{filename}"
        try:
            await self._objects.remove(self.bucket_for(kind), [path])
        except Exception as e:
            logger.error("Failed to delete remote image", url=image_url, error=str(e))

    async def run_orphan_sweep(
        self,
        kind: UploadKind,
        fetch_db_uris: Callable[[], Awaitable[Iterable[Optional[str]]]],
    ) -> Optional[int]:
        """Sweep the kind's directory if it is safe to. Returns None when skipped.

        ``fetch_db_uris`` loads the image URIs of the kind's rows; it is called
        here, right before the sweep, to keep the read-then-delete window small.
        """
        kind = UploadKind(kind)
        if self.queue.has_any_pending(kind):
            logger.info("Skipping orphan sweep, uploads in progress", kind=kind.value)
            return None

        try:
            db_uris = [uri for uri in await fetch_db_uris() if uri and is_local_uri(uri)]
        except Exception as e:
            logger.error("Could not load referenced images, skipping orphan sweep", kind=kind.value, error=str(e))
            return None

        # An upload may have been queued while the rows were loading
        if self.queue.has_any_pending(kind):
            logger.info("Skipping orphan sweep, upload queued during fetch", kind=kind.value)
            return None

        protected = collect_protected_uris(db_uris, self.queue, self.guard, kind)
        return await self._sweeper.sweep(protected, kind)
