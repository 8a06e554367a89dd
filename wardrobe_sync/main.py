"""Composition root: builds the background upload stack from settings."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from wardrobe_sync.config import Settings, settings as default_settings
from wardrobe_sync.core.logging import configure_logging, get_logger
from wardrobe_sync.db.guarded_updates import SupabaseRecordStore
from wardrobe_sync.db.supabase_client import get_supabase
from wardrobe_sync.jobs.job_store import JobStore
from wardrobe_sync.jobs.models import UploadKind
from wardrobe_sync.jobs.upload_queue import UploadQueue
from wardrobe_sync.lifecycle import HostLifecycle
from wardrobe_sync.storage.kv_store import JsonFileKeyValueStore
from wardrobe_sync.storage.local_files import LocalFileSystem, ManagedDirs
from wardrobe_sync.storage.orphan_sweep import OrphanSweeper
from wardrobe_sync.storage.recent_uris import RecentUriGuard
from wardrobe_sync.storage.supabase_objects import SupabaseObjectStore
from wardrobe_sync.uploads import BackgroundUploads

logger = get_logger(__name__)


def build_background_uploads(
    cfg: Optional[Settings] = None,
    lifecycle: Optional[HostLifecycle] = None,
    client=None,
) -> BackgroundUploads:
    """Wire every collaborator once. Pass ``client`` to reuse a Supabase client."""
    cfg = cfg or default_settings
    client = client if client is not None else get_supabase(cfg)

    fs = LocalFileSystem()
    dirs = ManagedDirs(cfg.documents_dir)
    store = JobStore(
        JsonFileKeyValueStore(cfg.queue_state_path),
        key=cfg.queue_key,
        default_buckets={
            UploadKind.WARDROBE.value: cfg.wardrobe_bucket,
            UploadKind.SCAN.value: cfg.scan_bucket,
        },
    )
    queue = UploadQueue(
        store,
        fs,
        lifecycle=lifecycle,
        max_attempts=cfg.max_upload_attempts,
        retry_delays_ms=cfg.retry_delays_ms,
        idle_debounce_ms=cfg.idle_debounce_ms,
        min_wakeup_delay_ms=cfg.min_wakeup_delay_ms,
    )
    return BackgroundUploads(
        queue=queue,
        objects=SupabaseObjectStore(client),
        records=SupabaseRecordStore(client),
        fs=fs,
        dirs=dirs,
        guard=RecentUriGuard(ttl_ms=cfg.recent_uri_ttl_ms),
        sweeper=OrphanSweeper(fs, dirs),
        wardrobe_bucket=cfg.wardrobe_bucket,
        scan_bucket=cfg.scan_bucket,
        compress_images=cfg.compress_images,
        compress_max_size=(cfg.compress_max_width, cfg.compress_max_height),
        compress_quality=cfg.compress_quality,
        cache_control=cfg.upload_cache_control,
    )


@asynccontextmanager
async def background_uploads(
    cfg: Optional[Settings] = None,
    lifecycle: Optional[HostLifecycle] = None,
    client=None,
) -> AsyncIterator[BackgroundUploads]:
    """Startup and shutdown logic for the upload stack."""
    cfg = cfg or default_settings
    configure_logging(json_logs=cfg.json_logs, log_level=cfg.log_level)
    logger.info("Starting background uploads", documents_dir=cfg.documents_dir, queue_state=cfg.queue_state_path)

    service = build_background_uploads(cfg, lifecycle=lifecycle, client=client)
    await service.initialize()
    try:
        yield service
    finally:
        logger.info("Shutting down background uploads", pending=service.queue.pending_count())
        await service.queue.close()
