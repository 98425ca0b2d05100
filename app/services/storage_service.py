import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, List, Optional

import aiofiles.os

from app.repository.token_index import TokenIndex, TokenRecord
from app.services import path_sanitizer
from app.services.directory_tree import FILE, DirectoryTree
from app.services.errors import (
    DuplicateToken,
    Forbidden,
    IndexWriteError,
    InvalidPath,
    NotFound,
    StorageDeleteError,
    UnsupportedMediaType,
)
from app.services.path_locks import PathLocks
from config import StorageConfig
from logger_config import setup_logger

logger = setup_logger()

TOKEN_ATTEMPTS = 3


@dataclass
class UploadResult:
    token: str
    canonical_path: str
    display_name: str


@dataclass
class ResolvedFile:
    absolute_path: Path
    canonical_path: str
    display_name: str


@dataclass
class ListEntry:
    display_name: str
    kind: str
    relative_path: str
    missing_metadata: bool = False


def generate_token() -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return f"{timestamp}-{uuid.uuid4()}"


def generate_file_name(display_name: str) -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4()}{path_sanitizer.safe_extension(display_name)}"


class StorageService:
    """Keeps the stored files and their token records in step.

    Index calls are blocking and run in the default worker pool; upload and
    delete hold the per-path locks of the target's lineage while they touch
    both sides.
    """

    def __init__(
        self,
        config: StorageConfig,
        token_index: TokenIndex,
        tree: Optional[DirectoryTree] = None,
    ):
        self.config = config
        self.token_index = token_index
        self.tree = tree or DirectoryTree(config.storage_root, config.temp_dir, PathLocks())
        self.locks = self.tree.locks

    async def initialize(self):
        logger.info("Initializing storage service...")
        await self.tree.initialize()
        await asyncio.to_thread(self.token_index.create_table)
        logger.info(f"Storage root: {self.tree.root}")

    async def upload(
        self,
        directory_path: Optional[str],
        chunks: AsyncIterable[bytes],
        display_name: str,
        content_type: Optional[str],
    ) -> UploadResult:
        if content_type not in self.config.allowed_mime_types:
            raise UnsupportedMediaType(f"File type not allowed: {content_type}")
        directory = path_sanitizer.sanitize(directory_path)
        display_name = path_sanitizer.display_name_of(display_name)
        if not display_name:
            raise InvalidPath("Uploaded file has no usable name")

        logger.info(f"Receiving upload of {display_name} into '{directory}'")

        try:
            async with self.locks.hold(*path_sanitizer.lineage(directory)):
                await self.tree.ensure_directory(directory)
                stored_path = await self.tree.place_file(
                    directory,
                    generate_file_name(display_name),
                    chunks,
                    self.config.max_length,
                )
                try:
                    record = await self._index_new_file(display_name, stored_path)
                except Exception:
                    logger.error(f"Index write failed for {stored_path}, removing the stored file", exc_info=True)
                    await self._discard_upload(stored_path)
                    raise
        except Exception:
            # Pruning takes the directory locks itself, so it runs once they are released
            await self.tree.prune_empty_ancestors(directory)
            raise

        logger.info(f"Stored {display_name} at {record.canonical_path}")
        return UploadResult(record.token, record.canonical_path, record.display_name)

    async def _index_new_file(self, display_name: str, stored_path: str) -> TokenRecord:
        for attempt in range(1, TOKEN_ATTEMPTS + 1):
            token = generate_token()
            try:
                return await asyncio.to_thread(self.token_index.put, token, display_name, stored_path)
            except DuplicateToken:
                logger.warning(f"Generated token collided (attempt {attempt}/{TOKEN_ATTEMPTS})")
                if attempt == TOKEN_ATTEMPTS:
                    raise

    async def _discard_upload(self, stored_path: str):
        """Remove a file whose index record could not be written. Caller holds its locks."""
        try:
            await self.tree.delete_recursive(stored_path)
        except Exception:
            # The index failure is what the caller sees; the leftover file is logged for repair
            logger.error(f"Compensation failed, {stored_path} is on disk without a token", exc_info=True)

    async def resolve(self, canonical_path: str, token: Optional[str]) -> ResolvedFile:
        """Check that token is bound to exactly this path and return the file on disk."""
        if not token:
            raise Forbidden("Invalid or missing token")
        record = await asyncio.to_thread(self.token_index.find_by_token, token)
        if record is None:
            logger.info("Rejected unknown token")
            raise Forbidden("Invalid or missing token")

        requested = path_sanitizer.sanitize(canonical_path, allow_root=False)
        if record.canonical_path != requested:
            logger.info(f"Rejected token for {requested}")
            raise Forbidden("Invalid or missing token")

        absolute_path = self.tree.resolve_absolute(requested)
        if not await aiofiles.os.path.isfile(absolute_path):
            logger.error(f"Index/disk divergence: token record for {requested} but no file on disk")
            raise NotFound("File not found")
        return ResolvedFile(absolute_path, requested, record.display_name)

    async def list(self, directory_path: Optional[str] = None) -> List[ListEntry]:
        directory = path_sanitizer.sanitize(directory_path)
        entries = await self.tree.list(directory)

        listed = []
        for entry in entries:
            if entry.kind != FILE:
                listed.append(ListEntry(entry.name, entry.kind, entry.relative_path))
                continue
            record = await asyncio.to_thread(self.token_index.find_by_path, entry.relative_path)
            if record is None:
                logger.warning(f"Index/disk divergence: no token record for {entry.relative_path}")
                listed.append(ListEntry(entry.name, entry.kind, entry.relative_path, missing_metadata=True))
            else:
                listed.append(ListEntry(record.display_name, entry.kind, entry.relative_path))
        return listed

    async def issue_token(self, canonical_path: str) -> TokenRecord:
        """Look up the existing token of a stored file for a shareable link."""
        path = path_sanitizer.sanitize(canonical_path, allow_root=False)
        record = await asyncio.to_thread(self.token_index.find_by_path, path)
        if record is None:
            raise NotFound("File not found.")
        return record

    async def delete(self, target_path: str):
        target = path_sanitizer.sanitize(target_path, allow_root=False)
        logger.info(f"Receiving delete request for {target}")

        try:
            async with self.locks.hold(*path_sanitizer.lineage(target)):
                if not await self.tree.exists(target):
                    raise NotFound("File or folder doesn't exists.")

                files = await self.tree.walk_files(target)
                records = await asyncio.to_thread(self.token_index.find_by_paths, files)
                await asyncio.to_thread(self.token_index.delete_by_paths, files)
                try:
                    await self.tree.delete_recursive(target)
                except StorageDeleteError:
                    await self._restore_records(records)
                    raise
        finally:
            # Start at the target itself: a partial subtree delete can leave it empty
            await self.tree.prune_empty_ancestors(target)

        logger.info(f"Deleted {target} ({len(files)} files)")

    async def _restore_records(self, records: List[TokenRecord]):
        """Put back the records of files a failed delete left on disk."""
        survivors = []
        for record in records:
            if await self.tree.is_file(record.canonical_path):
                survivors.append(record)
        try:
            await asyncio.to_thread(self.token_index.restore, survivors)
        except IndexWriteError:
            logger.error(
                f"Index/disk divergence: could not restore {len(survivors)} records after a failed delete",
                exc_info=True,
            )
            return
        logger.warning(f"Restored {len(survivors)} of {len(records)} records after a failed delete")
