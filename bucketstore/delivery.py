"""Turns a stored file (and an optional ``Range`` header) into a streamed response."""

import io
import logging
import os
import re
import time
import unicodedata
import zipfile
from typing import BinaryIO, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple
from urllib.parse import quote

from werkzeug.http import dump_options_header

from .content import ContentStore
from .errors import IntegrityFault, NotFoundError
from .expiry import seconds_remaining
from .metadata import Bucket, MetadataStore, StoredFile
from .paths import BucketPath

logger = logging.getLogger("bucketstore.delivery")

CHUNK_SIZE = 64 * 1024
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
ARCHIVE_NAME_LIMIT = 100

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")
_ARCHIVE_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_\-. ]")
_WHITESPACE = re.compile(r"\s+")


class DeliveryResult(NamedTuple):
    status: int
    headers: Dict[str, str]
    body: Iterable[bytes]


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a single ``bytes=`` range into inclusive ``(start, end)`` offsets.

    Returns ``None`` when the header is malformed, lists several ranges or cannot be
    satisfied for a file of *size* bytes. An end past the file is clamped.
    """

    match = _RANGE_PATTERN.match((header or "").strip())
    if not match:
        return None
    first, last = match.groups()
    if first == "" and last == "":
        return None
    if first == "":
        suffix = int(last)
        if suffix == 0:
            return None
        start, end = max(0, size - suffix), size - 1
    elif last == "":
        start, end = int(first), size - 1
    else:
        start, end = int(first), int(last)

    if start > end or start >= size:
        return None
    return start, min(end, size - 1)


def content_disposition(filename: str, disposition: str = "inline") -> str:
    """Build a Content-Disposition value with an ASCII fallback for non-ASCII names."""

    if all(0x20 <= ord(char) < 0x7F for char in filename):
        return dump_options_header(disposition, {"filename": filename})

    simple = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    simple = "".join(char for char in simple if 0x20 <= ord(char) < 0x7F) or "download"
    quoted = quote(filename, safe="!#$&+^`|~")
    return dump_options_header(disposition, {"filename": simple, "filename*": f"UTF-8''{quoted}"})


def cache_control(bucket: Bucket, now: float) -> str:
    remaining = seconds_remaining(bucket.expires_at, now)
    if remaining is None:
        return IMMUTABLE_CACHE_CONTROL
    return f"public, max-age={remaining}"


class FileSlice:
    """Iterate over ``length`` bytes of an open file starting at ``start``.

    The WSGI server calls :meth:`close` when the response finishes or the client goes
    away, which releases the file handle even if iteration never started.
    """

    def __init__(self, handle: BinaryIO, start: int, length: int, chunk_size: int = CHUNK_SIZE) -> None:
        self._handle = handle
        self._start = start
        self._remaining = length
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        try:
            self._handle.seek(self._start)
            while self._remaining > 0:
                chunk = self._handle.read(min(self._chunk_size, self._remaining))
                if not chunk:
                    break
                self._remaining -= len(chunk)
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


class _ChunkSink(io.RawIOBase):
    """Unseekable write target that hands buffered bytes back in pieces."""

    def __init__(self) -> None:
        super().__init__()
        self._chunks: List[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks = []
        return data


class DeliveryEngine:
    def __init__(
        self,
        metadata: MetadataStore,
        content: ContentStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.metadata = metadata
        self.content = content
        self._clock = clock

    def _live_bucket(self, bucket_id: str) -> Bucket:
        bucket = self.metadata.get_bucket(bucket_id)
        if bucket is None:
            raise NotFoundError("Bucket not found", "This bucket does not exist or has expired.")
        return bucket

    def serve(self, bucket_id: str, path: str, range_header: Optional[str] = None) -> DeliveryResult:
        bucket = self._live_bucket(bucket_id)
        relative = BucketPath.parse(path)
        record = self.metadata.get_file(bucket_id, relative)
        if record is None:
            raise NotFoundError("File not found", f"No file at path '{relative}' in this bucket.")

        handle = self.content.open(bucket_id, relative)
        if handle is None:
            logger.error("integrity_fault bucket=%s path=%s", bucket_id, relative)
            raise IntegrityFault("File missing")
        # Size comes from the open handle so it matches the bytes actually streamed.
        size = os.fstat(handle.fileno()).st_size

        headers = {
            "Content-Type": record.mime_type,
            "Content-Disposition": content_disposition(relative.name),
            "Accept-Ranges": "bytes",
            "Cache-Control": cache_control(bucket, self._clock()),
        }

        if range_header is None:
            headers["Content-Length"] = str(size)
            return DeliveryResult(200, headers, FileSlice(handle, 0, size))

        window = parse_range(range_header, size)
        if window is None:
            handle.close()
            logger.info(
                "range_not_satisfiable bucket=%s path=%s size=%d", bucket_id, relative, size
            )
            return DeliveryResult(
                416,
                {"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
                [],
            )

        start, end = window
        length = end - start + 1
        headers["Content-Length"] = str(length)
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        return DeliveryResult(206, headers, FileSlice(handle, start, length))

    def archive(self, bucket_id: str) -> DeliveryResult:
        """Stream every file of the bucket as one ZIP archive."""

        bucket = self._live_bucket(bucket_id)
        files = self.metadata.list_files(bucket_id)
        if not files:
            raise NotFoundError("No files", "This bucket has no files to download.")
        for record in files:
            if self.content.stat_size(bucket_id, record.path) is None:
                logger.error("integrity_fault bucket=%s path=%s", bucket_id, record.path)
                raise IntegrityFault("File missing")

        archive_name = _WHITESPACE.sub("_", _ARCHIVE_NAME_UNSAFE.sub("_", bucket.name))
        archive_name = archive_name[:ARCHIVE_NAME_LIMIT] or bucket.id
        headers = {
            "Content-Type": "application/zip",
            "Content-Disposition": content_disposition(f"{archive_name}.zip", "attachment"),
            "Cache-Control": "no-store",
        }
        return DeliveryResult(200, headers, self._zip_stream(bucket_id, files))

    def _zip_stream(self, bucket_id: str, files: List[StoredFile]) -> Iterator[bytes]:
        sink = _ChunkSink()
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            for record in files:
                handle = self.content.open(bucket_id, record.path)
                if handle is None:
                    # Deleted after the listing was taken.
                    logger.warning("archive_entry_vanished bucket=%s path=%s", bucket_id, record.path)
                    continue
                info = zipfile.ZipInfo(record.path, date_time=time.gmtime(max(record.created_at, 315532800))[:6])
                info.compress_type = zipfile.ZIP_DEFLATED
                info.file_size = record.size
                with handle, archive.open(info, mode="w", force_zip64=record.size >= zipfile.ZIP64_LIMIT) as entry:
                    for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
                        entry.write(chunk)
                        pending = sink.drain()
                        if pending:
                            yield pending
                pending = sink.drain()
                if pending:
                    yield pending
        remainder = sink.drain()
        if remainder:
            yield remainder
