"""Orphan sweep: reclaim local images no live record, job or fresh save references.

A file is kept when its full URI is in the protected set, which the caller
builds right before sweeping as the union of
  1. image URIs currently stored on the kind's database rows,
  2. local files of queued uploads for the kind,
  3. files saved within the recent-URI TTL window.
Never sweep while uploads for the kind are pending; a queued job's source
file could otherwise disappear mid-upload.
"""

from typing import Iterable, Optional, Set

from wardrobe_sync.core.logging import get_logger
from wardrobe_sync.jobs.dispatcher import UploadDispatcher
from wardrobe_sync.jobs.models import UploadKind
from wardrobe_sync.storage.base import FileSystem
from wardrobe_sync.storage.local_files import ManagedDirs
from wardrobe_sync.storage.recent_uris import RecentUriGuard

logger = get_logger(__name__)


def collect_protected_uris(
    db_uris: Iterable[Optional[str]],
    queue: UploadDispatcher,
    guard: RecentUriGuard,
    kind: UploadKind,
) -> Set[str]:
    """Union of db row URIs, pending-upload URIs and recently created URIs, in that order."""
    protected = {uri for uri in db_uris if uri}
    protected |= queue.pending_uris(kind)
    protected |= guard.snapshot()
    return protected


class OrphanSweeper:
    """Deletes unreferenced files from the managed per-kind directories."""

    def __init__(self, fs: FileSystem, dirs: ManagedDirs):
        self._fs = fs
        self._dirs = dirs

    async def sweep(self, valid_uris: Set[str], kind: UploadKind = UploadKind.WARDROBE) -> int:
        """Delete every file in the kind's directory whose URI is not in ``valid_uris``.

        Best effort: a failed delete is logged and skipped. Returns the number
        of files deleted and never raises.
        """
        try:
            kind = UploadKind(kind)
            directory = self._dirs.dir_for(kind)
            logger.info("Starting orphan sweep", kind=kind.value, directory=directory, protected=len(valid_uris))
            if not await self._fs.exists(directory):
                logger.info("No local image directory, skipping sweep", kind=kind.value)
                return 0
            filenames = await self._fs.read_directory(directory)
        except Exception as e:
            logger.error("Orphan sweep failed", kind=str(kind), error=str(e))
            return 0

        logger.info("Found local files", kind=kind.value, count=len(filenames))
        deleted = 0
        for filename in filenames:
            full_uri = f"{directory}{filename}"
            if full_uri in valid_uris:
                continue
            try:
                await self._fs.delete(full_uri)
            except Exception as e:
                logger.error("Failed to delete orphan", filename=filename, error=str(e))
                continue
            deleted += 1
            logger.info("Deleted orphan", filename=filename)

        logger.info("Orphan sweep complete", kind=kind.value, deleted=deleted)
        return deleted
