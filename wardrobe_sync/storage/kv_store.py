"""JSON-file backed key-value store for durable queue state."""

import asyncio
import json
import os
import tempfile
from typing import Dict, Optional

from wardrobe_sync.storage.base import KeyValueStore


class JsonFileKeyValueStore(KeyValueStore):
    """Keeps every key in one JSON object on disk.

    Writes go to a temp file in the same directory and are swapped in with
    os.replace, so a crash mid-write leaves the previous contents intact.
    Writes run one at a time in call order.
    """

    def __init__(self, path: str):
        self._path = path
        self._write_lock: Optional[asyncio.Lock] = None
        self._write_lock_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def path(self) -> str:
        return self._path

    async def get_item(self, key: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._read_all)
        value = data.get(key)
        return value if isinstance(value, str) else None

    async def set_item(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        if self._write_lock is None or self._write_lock_loop is not loop:
            self._write_lock = asyncio.Lock()
            self._write_lock_loop = loop
        async with self._write_lock:
            await loop.run_in_executor(None, self._write_key, key, value)

    def _read_all(self) -> Dict[str, object]:
        if not os.path.exists(self._path):
            return {}
        with open(self._path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Key-value file {self._path} does not hold a JSON object")
        return data

    def _write_key(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value

        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".kv-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
