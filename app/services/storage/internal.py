import os
import shutil
import asyncio
import logging
from typing import Optional
from .base import BaseStorage
from app.core.errors import StorageFailure

logger = logging.getLogger(__name__)

class InternalStorage(BaseStorage):
    def __init__(self, root: str):
        self.root = root

    def _final_path(self, name: str) -> str:
        root = os.path.realpath(self.root)
        final_path = os.path.realpath(os.path.join(root, name))
        if os.path.dirname(final_path) != root:
            raise StorageFailure(f"Refusing to store {name!r} outside {root}")
        return final_path

    def _store_sync(self, file_path: str, name: str) -> str:
        final_path = self._final_path(name)
        os.makedirs(self.root, exist_ok=True)
        if os.path.exists(final_path):
            raise StorageFailure(f"Permanent file already exists: {name}")
        shutil.move(file_path, final_path)
        logger.info(f"Stored {file_path} as {final_path}")
        return final_path

    async def store(self, file_path: str, name: str, content_type: Optional[str] = None) -> str:
        try:
            return await asyncio.to_thread(self._store_sync, file_path, name)
        except OSError as e:
            raise StorageFailure(f"Local store failed: {e}")

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(os.path.exists, self._final_path(name))
