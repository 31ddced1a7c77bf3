"""Attachment artifact storage: the local images directory behind an interface."""

from __future__ import annotations

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import aiofiles

from localchat.errors import ArtifactStorageError
from localchat.log import get_logger

logger = get_logger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")


@dataclass(frozen=True, slots=True)
class StoredFile:
    filename: str
    path: str
    url: str


class AttachmentStore(ABC):
    """Where generated artifacts live. Swap for an object store without touching callers."""

    @abstractmethod
    async def write(self, data: bytes, suffix: str = ".png") -> StoredFile:
        ...

    @abstractmethod
    async def list(self) -> list[str]:
        """Stored filenames, most recently modified first."""
        ...

    @abstractmethod
    async def delete_older_than(self, age: timedelta) -> int:
        """Delete artifacts older than ``age`` and return how many were removed."""
        ...


class LocalImageStore(AttachmentStore):
    """Writes images under one directory, served at ``<url_prefix>/<filename>``."""

    def __init__(self, images_dir: str | Path, url_prefix: str = "/images", prefix: str = "sd"):
        self._dir = Path(images_dir)
        self._url_prefix = url_prefix.rstrip("/")
        self._prefix = prefix
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _new_filename(self, suffix: str) -> str:
        # timestamp + random token, unique without coordination
        return f"{self._prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}{suffix}"

    async def write(self, data: bytes, suffix: str = ".png") -> StoredFile:
        filename = self._new_filename(suffix)
        path = self._dir / filename
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            logger.error("image_save_failed", filename=filename, error=str(e))
            raise ArtifactStorageError(f"Could not save image {filename}: {e}") from e
        logger.info("image_saved", filename=filename, size=len(data))
        return StoredFile(filename=filename, path=str(path), url=f"{self._url_prefix}/{filename}")

    async def list(self) -> list[str]:
        try:
            return await asyncio.to_thread(self._list_sync)
        except OSError as e:
            raise ArtifactStorageError(f"Could not list images in {self._dir}: {e}") from e

    def _list_sync(self) -> list[str]:
        files = [
            p for p in self._dir.iterdir()
            if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
        ]
        files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.name for p in files]

    async def delete_older_than(self, age: timedelta) -> int:
        try:
            removed = await asyncio.to_thread(self._delete_older_than_sync, age)
        except OSError as e:
            raise ArtifactStorageError(f"Could not clean up images in {self._dir}: {e}") from e
        if removed:
            logger.info("images_cleaned_up", removed=removed, max_age_hours=age.total_seconds() / 3600)
        return removed

    def _delete_older_than_sync(self, age: timedelta) -> int:
        cutoff = time.time() - age.total_seconds()
        removed = 0
        for path in self._dir.iterdir():
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        return removed
