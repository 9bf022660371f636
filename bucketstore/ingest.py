"""Streaming multipart ingestion.

The request body is pulled through Werkzeug's sans-IO ``MultipartDecoder`` in fixed
size reads and every file part is written straight into the content store, so memory
use does not grow with upload size.
"""

import logging
import mimetypes
import sqlite3
from typing import BinaryIO, Iterator, List, NamedTuple, Optional, Union

from werkzeug.datastructures import Headers
from werkzeug.sansio.multipart import (
    HEADER_CONTINUATION_RE,
    NEED_DATA,
    Data,
    Epilogue,
    Event,
    Field,
    File,
    MultipartDecoder,
)

from .content import ContentStore
from .errors import MalformedInputError, NotFoundError
from .metadata import MetadataStore
from .paths import BucketPath, repair_legacy_encoding, sanitize_path

logger = logging.getLogger("bucketstore.ingest")

READ_SIZE = 64 * 1024
MAX_PARTS = 1000
GENERIC_FIELD_NAMES = {"file", "files", "upload", "uploads", "blob"}
DEFAULT_MIME_TYPE = "application/octet-stream"
MIME_OVERRIDES = {
    ".ts": "text/typescript",
    ".mts": "text/typescript",
    ".cts": "text/typescript",
    ".tsx": "text/typescript-jsx",
    ".md": "text/markdown",
}


class UploadedFile(NamedTuple):
    path: str
    size: int
    mime_type: str
    short_id: str


def guess_mime_type(path: str) -> str:
    name = path.rsplit("/", 1)[-1].lower()
    if "." in name:
        override = MIME_OVERRIDES.get("." + name.rsplit(".", 1)[-1])
        if override:
            return override
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_MIME_TYPE


def destination_path(field_name: str, filename: str) -> Optional[BucketPath]:
    """Pick the stored path for one part, or ``None`` when the part must be skipped.

    Conventional field names mean "use the client's filename"; any other field name is
    itself the destination path.
    """

    field_name = repair_legacy_encoding(field_name or "")
    filename = repair_legacy_encoding(filename or "")
    if field_name.lower() in GENERIC_FIELD_NAMES:
        raw = filename or field_name
    else:
        raw = field_name
    cleaned = sanitize_path(raw)
    if cleaned in {"", ".", ".."}:
        return None
    return BucketPath.parse(cleaned)


class Latin1MultipartDecoder(MultipartDecoder):
    """Decoder that reads part headers as ISO-8859-1 instead of strict UTF-8.

    Clients that send raw UTF-8 filenames without the ``filename*`` form produce bytes
    that are only meaningful once :func:`repair_legacy_encoding` has looked at them, and
    genuinely single-byte names must not abort the request.
    """

    def _parse_headers(self, data: Union[bytes, bytearray]) -> Headers:
        headers = []
        data = HEADER_CONTINUATION_RE.sub(b" ", data)
        for line in data.splitlines():
            line = line.strip(b" \t")
            if line:
                name, _, value = line.decode("latin-1").partition(":")
                headers.append((name.strip(" \t"), value.strip(" \t")))
        return Headers(headers)


class IngestPipeline:
    def __init__(self, metadata: MetadataStore, content: ContentStore, max_parts: int = MAX_PARTS) -> None:
        self.metadata = metadata
        self.content = content
        self.max_parts = max_parts

    def _events(self, stream: BinaryIO, decoder: MultipartDecoder) -> Iterator[Event]:
        while True:
            event = decoder.next_event()
            if event is NEED_DATA:
                chunk = stream.read(READ_SIZE)
                decoder.receive_data(chunk or None)
                continue
            if isinstance(event, Epilogue):
                return
            yield event

    @staticmethod
    def _part_data(events: Iterator[Event]) -> Iterator[bytes]:
        for event in events:
            if not isinstance(event, Data):
                raise ValueError("Part ended without data")
            if event.data:
                yield event.data
            if not event.more_data:
                return
        raise ValueError("Body ended inside a part")

    def ingest(self, bucket_id: str, stream: BinaryIO, boundary: Union[str, bytes]) -> List[UploadedFile]:
        """Store every file part of a multipart body and return what was written.

        Parts already written stay stored if a later part fails; the error is raised
        so the caller never reports a partial upload as a success.
        """

        if not boundary:
            raise MalformedInputError("Invalid form data", "The multipart boundary is missing.")
        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        decoder = Latin1MultipartDecoder(boundary, max_parts=self.max_parts)
        events = self._events(stream, decoder)

        uploaded: List[UploadedFile] = []
        try:
            for event in events:
                if isinstance(event, File):
                    stored = self._store_part(bucket_id, event, self._part_data(events))
                    if stored is not None:
                        uploaded.append(stored)
                elif isinstance(event, Field):
                    for _ in self._part_data(events):
                        pass
        except ValueError as error:
            logger.warning(
                "multipart_rejected bucket=%s stored=%d error=%s", bucket_id, len(uploaded), error
            )
            raise MalformedInputError(
                "Invalid form data", "Failed to parse multipart form data."
            ) from error
        return uploaded

    def _store_part(self, bucket_id: str, event: File, data: Iterator[bytes]) -> Optional[UploadedFile]:
        target = destination_path(event.name, event.filename)
        if target is None:
            for _ in data:
                pass
            logger.info("multipart_part_skipped bucket=%s field=%r", bucket_id, event.name)
            return None

        # Rejects before the first byte is written.
        self.content.resolve(bucket_id, target)
        size = self.content.put(bucket_id, target, data)
        mime_type = guess_mime_type(target)
        try:
            record = self.metadata.upsert_file(bucket_id, target, size, mime_type)
        except sqlite3.IntegrityError:
            # The bucket row vanished while the part was streaming.
            self.content.delete_file(bucket_id, target)
            raise NotFoundError("Bucket not found", "This bucket was deleted during the upload.") from None
        logger.info(
            "file_stored bucket=%s path=%s size=%d short_id=%s", bucket_id, target, size, record.short_id
        )
        return UploadedFile(path=record.path, size=size, mime_type=mime_type, short_id=record.short_id)
