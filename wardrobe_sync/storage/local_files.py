"""Local disk access and the managed per-kind image directories."""

import asyncio
import os
import shutil
from typing import List, Optional

from wardrobe_sync.jobs.models import UploadKind
from wardrobe_sync.storage.base import FileSystem

FILE_SCHEME = "file://"


def to_path(uri: str) -> str:
    """Strip the file:// scheme, leaving a plain filesystem path."""
    if uri.startswith(FILE_SCHEME):
        return uri[len(FILE_SCHEME):]
    return uri


def to_uri(path: str) -> str:
    if path.startswith(FILE_SCHEME):
        return path
    return FILE_SCHEME + path


class LocalFileSystem(FileSystem):
    """FileSystem over the OS. Blocking calls run in the default executor."""

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def exists(self, uri: str) -> bool:
        return await self._run(os.path.exists, to_path(uri))

    async def read_directory(self, dir_uri: str) -> List[str]:
        def _list(path: str) -> List[str]:
            return sorted(
                name for name in os.listdir(path)
                if os.path.isfile(os.path.join(path, name))
            )
        return await self._run(_list, to_path(dir_uri))

    async def delete(self, uri: str) -> None:
        def _delete(path: str) -> None:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
        await self._run(_delete, to_path(uri))

    async def read_bytes(self, uri: str) -> bytes:
        def _read(path: str) -> bytes:
            with open(path, "rb") as f:
                return f.read()
        return await self._run(_read, to_path(uri))

    async def copy(self, src_uri: str, dst_uri: str) -> None:
        await self._run(shutil.copyfile, to_path(src_uri), to_path(dst_uri))

    async def make_directory(self, dir_uri: str) -> None:
        def _mkdir(path: str) -> None:
            os.makedirs(path, exist_ok=True)
        await self._run(_mkdir, to_path(dir_uri))


class ManagedDirs:
    """Resolves the local directory each upload kind keeps its images in.

    Directory URIs always end with a slash so a file URI is ``dir + name``.
    """

    _SUBDIRS = {
        UploadKind.WARDROBE: "wardrobe-images",
        UploadKind.SCAN: "scan-images",
    }

    def __init__(self, documents_dir: str):
        root = os.path.abspath(to_path(documents_dir))
        self._dirs = {
            kind: to_uri(os.path.join(root, sub)) + "/"
            for kind, sub in self._SUBDIRS.items()
        }

    def dir_for(self, kind: UploadKind) -> str:
        return self._dirs[UploadKind(kind)]

    def is_managed(self, uri: str, kind: Optional[UploadKind] = None) -> bool:
        if kind is not None:
            return uri.startswith(self.dir_for(kind))
        return any(uri.startswith(d) for d in self._dirs.values())
