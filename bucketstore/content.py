"""Filesystem persistence for bucket contents.

Layout: ``<root>/<bucket_id>/<relative path>``. Every public method resolves its target
through :meth:`ContentStore.resolve`, which refuses anything outside the bucket root.
"""

import logging
import os
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Union

from .errors import MalformedInputError, UnsafePathError
from .paths import BucketPath, is_valid_bucket_id

logger = logging.getLogger("bucketstore.content")

TEMP_SUFFIX = ".tmp"
DELETE_BUCKET_ATTEMPTS = 5
_TEMP_NAME_PATTERN = re.compile(r"^\..+\.[0-9a-f]{32}\.tmp$")


class ContentStore:
    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def bucket_root(self, bucket_id: str) -> Path:
        if not is_valid_bucket_id(bucket_id):
            raise UnsafePathError("Invalid bucket id")
        return self.root / bucket_id

    def resolve(self, bucket_id: str, path: Union[str, BucketPath]) -> Path:
        """Return the absolute location of *path* inside the bucket.

        The candidate is checked lexically and again after following symlinks; both
        must stay under the bucket root or :class:`UnsafePathError` is raised.
        """

        if not isinstance(path, BucketPath):
            path = BucketPath.parse(path)
        bucket_root = self.bucket_root(bucket_id)

        lexical_root = os.path.normpath(os.path.abspath(bucket_root))
        lexical = os.path.normpath(os.path.join(lexical_root, *path.parts))
        if os.path.commonpath([lexical_root, lexical]) != lexical_root or lexical == lexical_root:
            raise UnsafePathError("Path escapes bucket root")

        real_root = os.path.realpath(bucket_root)
        real = os.path.realpath(lexical)
        if os.path.commonpath([real_root, real]) != real_root or real == real_root:
            logger.warning(
                "symlink_escape_rejected bucket=%s path=%s", bucket_id, path
            )
            raise UnsafePathError("Path escapes bucket root")
        return Path(lexical)

    def put(self, bucket_id: str, path: Union[str, BucketPath], chunks: Iterable[bytes]) -> int:
        """Write *chunks* to *path*, replacing any previous file, and return the size.

        Bytes go to a sibling temporary file first and are moved into place with
        ``os.replace`` once fully flushed, so a reader never sees a partial file.
        """

        target = self.resolve(bucket_id, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except (FileExistsError, NotADirectoryError):
            raise MalformedInputError(
                "Path conflict", f"A parent of '{path}' is already stored as a file."
            ) from None
        if target.is_dir():
            raise MalformedInputError("Path conflict", f"'{path}' is already a directory.")
        # Re-check now that intermediate directories exist.
        self.resolve(bucket_id, path)

        temp_path = target.with_name(f".{target.name[:64]}.{uuid.uuid4().hex}{TEMP_SUFFIX}")
        written = 0
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as handle:
                for chunk in chunks:
                    if chunk:
                        handle.write(chunk)
                        written += len(chunk)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except Exception:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            raise
        logger.debug("content_written bucket=%s path=%s bytes=%d", bucket_id, path, written)
        return written

    def open(self, bucket_id: str, path: Union[str, BucketPath]) -> Optional[BinaryIO]:
        target = self.resolve(bucket_id, path)
        try:
            return target.open("rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None

    def stat_size(self, bucket_id: str, path: Union[str, BucketPath]) -> Optional[int]:
        target = self.resolve(bucket_id, path)
        try:
            stat_result = target.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        if not target.is_file():
            return None
        return stat_result.st_size

    def delete_file(self, bucket_id: str, path: Union[str, BucketPath]) -> bool:
        target = self.resolve(bucket_id, path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        self._prune_empty_dirs(bucket_id, target.parent)
        return True

    def _prune_empty_dirs(self, bucket_id: str, directory: Path) -> None:
        """Remove directories left empty by a deletion, stopping at the bucket root."""

        bucket_root = Path(os.path.abspath(self.bucket_root(bucket_id)))
        current = Path(os.path.abspath(directory))
        while current != bucket_root and bucket_root in current.parents:
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent

    def delete_bucket(self, bucket_id: str) -> None:
        """Remove the whole bucket subtree. An absent bucket is not an error."""

        bucket_root = self.bucket_root(bucket_id)
        for attempt in range(DELETE_BUCKET_ATTEMPTS):
            try:
                shutil.rmtree(bucket_root)
            except FileNotFoundError:
                # A concurrent delete removed an entry under us; finish what it left.
                if not bucket_root.exists():
                    return
                if attempt == DELETE_BUCKET_ATTEMPTS - 1:
                    raise
                continue
            logger.info("bucket_content_deleted bucket=%s", bucket_id)
            return

    def bucket_dirs(self) -> List[str]:
        try:
            entries = list(self.root.iterdir())
        except FileNotFoundError:
            return []
        return sorted(
            entry.name for entry in entries if entry.is_dir() and is_valid_bucket_id(entry.name)
        )

    def cleanup_temp_files(self, max_age_seconds: float = 3600, now: Optional[float] = None) -> int:
        """Remove temporary files abandoned by interrupted writes."""

        cutoff = (time.time() if now is None else now) - max_age_seconds
        removed = 0
        for temp_file in self.root.rglob(f"*{TEMP_SUFFIX}"):
            if not _TEMP_NAME_PATTERN.match(temp_file.name) or not temp_file.is_file():
                continue
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)
        return removed
