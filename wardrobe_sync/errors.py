"""Exception types raised by the sync layer."""

from typing import Optional


class WardrobeSyncError(Exception):
    """Base class for all wardrobe sync errors."""


class ConfigurationError(WardrobeSyncError):
    """Required settings (e.g. Supabase credentials) are missing."""


class UploadError(WardrobeSyncError):
    """The object store rejected an upload."""

    def __init__(self, message: str, bucket: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.bucket = bucket
        self.path = path


class LocalStorageError(WardrobeSyncError):
    """A local image could not be saved into its managed directory."""
