"""Supabase Storage adapter for the ObjectStore interface."""

import asyncio
from typing import Any, List, Optional

from wardrobe_sync.errors import UploadError, WardrobeSyncError
from wardrobe_sync.storage.base import ObjectStore


class SupabaseObjectStore(ObjectStore):
    """ObjectStore over a supabase-py client.

    supabase-py is synchronous, so network calls run in the default executor
    to keep the event loop free while a blob is in flight.
    """

    def __init__(self, client: Any):
        self._client = client

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str,
        upsert: bool = True,
        cache_control: Optional[str] = None,
    ) -> None:
        file_options = {
            "content-type": content_type,
            "upsert": "true" if upsert else "false",
        }
        if cache_control:
            file_options["cache-control"] = cache_control

        def _upload() -> None:
            self._client.storage.from_(bucket).upload(path, data, file_options)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _upload)
        except Exception as e:
            raise UploadError(f"Upload failed: {e}", bucket=bucket, path=path) from e

    def get_public_url(self, bucket: str, path: str) -> str:
        return self._client.storage.from_(bucket).get_public_url(path)

    async def remove(self, bucket: str, paths: List[str]) -> None:
        def _remove() -> None:
            self._client.storage.from_(bucket).remove(paths)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _remove)
        except Exception as e:
            raise WardrobeSyncError(f"Remove failed for {bucket}: {e}") from e
