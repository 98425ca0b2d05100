import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, List, Optional

import aiofiles
import aiofiles.os

from app.services.errors import (
    ContentTooLarge,
    DirectoryNotFound,
    InvalidPath,
    NotFound,
    StorageDeleteError,
    StorageWriteError,
)
from app.services.path_locks import PathLocks
from app.services.path_sanitizer import join, parent_of
from logger_config import setup_logger

logger = setup_logger()

FILE = "file"
DIRECTORY = "directory"


@dataclass
class DirEntry:
    name: str
    kind: str
    relative_path: str


class DirectoryTree:
    """Filesystem view of the storage root.

    Every method takes canonical, root-relative paths and maps them through
    resolve_absolute, which refuses anything that lands outside the root.
    """

    def __init__(self, root: Path, temp_dir: Path, locks: Optional[PathLocks] = None):
        self.root = Path(root).resolve()
        self.temp_dir = Path(temp_dir).resolve()
        self.locks = locks or PathLocks()

    async def initialize(self):
        """Create the root and staging directories and clear stale staging files."""
        self.root.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Storage directories created/verified: {self.root}, {self.temp_dir}")

        files_removed = 0
        for file in self.temp_dir.glob("*.part"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        logger.info(f"Cleaned temporary directory, removed {files_removed} files")

    def resolve_absolute(self, relative_path: str) -> Path:
        resolved = (self.root / relative_path).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            logger.warning(f"Rejected path escaping the storage root: {relative_path}")
            raise InvalidPath(f"Path escapes the storage root: {relative_path}")
        return resolved

    async def exists(self, relative_path: str) -> bool:
        return await aiofiles.os.path.exists(self.resolve_absolute(relative_path))

    async def is_file(self, relative_path: str) -> bool:
        return await aiofiles.os.path.isfile(self.resolve_absolute(relative_path))

    async def ensure_directory(self, relative_dir: str) -> Path:
        """Create the directory and its missing ancestors. Safe to race."""
        directory = self.resolve_absolute(relative_dir)
        try:
            await aiofiles.os.makedirs(directory, exist_ok=True)
        except (FileExistsError, NotADirectoryError) as e:
            # A stored file sits where the directory or one of its ancestors should be
            raise InvalidPath(f"Cannot create directory {relative_dir}: a file is in the way") from e
        except OSError as e:
            raise StorageWriteError(f"Cannot create directory {relative_dir}: {e}") from e
        return directory

    async def place_file(
        self,
        relative_dir: str,
        generated_name: str,
        chunks: AsyncIterable[bytes],
        max_length: int,
    ) -> str:
        """Stream content into the staging area, then move it under relative_dir.

        Returns:
            str: canonical path of the stored file
        """
        relative_path = join(relative_dir, generated_name)
        final_path = self.resolve_absolute(relative_path)
        temp_path = self.temp_dir / f"{generated_name}.part"

        content_size = 0
        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                async for chunk in chunks:
                    content_size += len(chunk)
                    if content_size > max_length:
                        raise ContentTooLarge(
                            f"Content size exceeds maximum allowed size ({max_length} bytes)"
                        )
                    await f.write(chunk)
            await aiofiles.os.rename(temp_path, final_path)
        except ContentTooLarge:
            await self._discard(temp_path)
            raise
        except OSError as e:
            logger.error(f"Error writing {relative_path}: {e}", exc_info=True)
            await self._discard(temp_path)
            raise StorageWriteError(f"Error storing file: {e}") from e

        logger.debug(f"Stored {content_size} bytes at {relative_path}")
        return relative_path

    async def _discard(self, path: Path):
        try:
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.unlink(path)
        except OSError:
            logger.error(f"Failed to remove staging file {path}", exc_info=True)

    async def list(self, relative_dir: str) -> List[DirEntry]:
        """One level of entries under relative_dir, sorted by name. Empty list if empty."""
        directory = self.resolve_absolute(relative_dir)
        if not await aiofiles.os.path.isdir(directory):
            raise DirectoryNotFound(f"Path: {relative_dir}, doesn't exists.")

        entries = []
        for dirent in await aiofiles.os.scandir(directory):
            if dirent.is_dir(follow_symlinks=False):
                kind = DIRECTORY
            elif dirent.is_file(follow_symlinks=False):
                kind = FILE
            else:
                continue
            entries.append(DirEntry(dirent.name, kind, join(relative_dir, dirent.name)))
        entries.sort(key=lambda entry: entry.name)
        return entries

    async def walk_files(self, relative_path: str) -> List[str]:
        """Canonical paths of every file at or below relative_path."""
        target = self.resolve_absolute(relative_path)
        if await aiofiles.os.path.isfile(target):
            return [relative_path]
        return await asyncio.to_thread(self._walk_files, target)

    def _walk_files(self, target: Path) -> List[str]:
        files = []
        for folder_path, _, names in os.walk(target):
            for name in names:
                files.append(Path(folder_path, name).relative_to(self.root).as_posix())
        files.sort()
        return files

    async def delete_recursive(self, relative_path: str):
        """Remove a file, or a directory with its whole subtree. No ancestor pruning."""
        target = self.resolve_absolute(relative_path)
        if target == self.root:
            raise InvalidPath("Refusing to delete the storage root")
        try:
            if await aiofiles.os.path.isdir(target):
                await asyncio.to_thread(shutil.rmtree, target)
            else:
                await aiofiles.os.unlink(target)
        except FileNotFoundError as e:
            raise NotFound(f"File or folder doesn't exists: {relative_path}") from e
        except OSError as e:
            logger.error(f"Error deleting {relative_path}: {e}", exc_info=True)
            raise StorageDeleteError(f"Error deleting {relative_path}: {e}") from e

    async def prune_empty_ancestors(self, relative_dir: str) -> List[str]:
        """Walk upward from relative_dir removing directories left empty.

        Stops at the first non-empty directory and never touches the storage
        root. Each directory is checked under its own lock so a concurrent
        upload into it is never pulled out from under the writer.

        Returns:
            List[str]: the directories that were removed, deepest first
        """
        removed = []
        current = relative_dir
        while current:
            async with self.locks.hold(current):
                directory = self.resolve_absolute(current)
                try:
                    if await aiofiles.os.listdir(directory):
                        break
                    await aiofiles.os.rmdir(directory)
                except FileNotFoundError:
                    # Already gone; keep walking up
                    pass
                except OSError as e:
                    # Something landed in it between the check and the removal
                    logger.debug(f"Stopped pruning at {current}: {e}")
                    break
                else:
                    removed.append(current)
            current = parent_of(current)

        if removed:
            logger.debug(f"Pruned empty directories: {removed}")
        return removed
