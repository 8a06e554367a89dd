"""Storage collaborator interfaces (local disk, durable key-value, object store)."""

from abc import ABC, abstractmethod
from typing import List, Optional


class KeyValueStore(ABC):
    """Durable string key-value storage that survives process restarts."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        ...


class FileSystem(ABC):
    """Local file access by URI (``file://...``) or plain path.

    Every call is assumed atomic on its own; nothing here coordinates
    across calls.
    """

    @abstractmethod
    async def exists(self, uri: str) -> bool:
        ...

    @abstractmethod
    async def read_directory(self, dir_uri: str) -> List[str]:
        """Return the bare file names inside a directory."""
        ...

    @abstractmethod
    async def delete(self, uri: str) -> None:
        """Delete a file. Missing files are not an error."""
        ...

    @abstractmethod
    async def read_bytes(self, uri: str) -> bytes:
        ...

    @abstractmethod
    async def copy(self, src_uri: str, dst_uri: str) -> None:
        ...

    @abstractmethod
    async def make_directory(self, dir_uri: str) -> None:
        """Create a directory and any missing parents."""
        ...


class ObjectStore(ABC):
    """Remote blob storage addressed by (bucket, path)."""

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str,
        upsert: bool = True,
        cache_control: Optional[str] = None,
    ) -> None:
        """Store ``data`` at ``bucket/path``. Raises UploadError on failure."""
        ...

    @abstractmethod
    def get_public_url(self, bucket: str, path: str) -> str:
        ...

    @abstractmethod
    async def remove(self, bucket: str, paths: List[str]) -> None:
        ...
