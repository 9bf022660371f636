"""Path and identifier handling shared by ingestion, storage and delivery.

Every relative path that reaches the content store is a :class:`BucketPath`. Building one
runs the full sanitize-and-check pipeline, so code holding a ``BucketPath`` never has
to re-validate it.
"""

import re
import secrets
import string
from typing import Tuple
from urllib.parse import quote

from .errors import UnsafePathError

ID_ALPHABET = string.ascii_letters + string.digits + "_-"
BUCKET_ID_LENGTH = 10
SHORT_ID_LENGTH = 8
MAX_PATH_LENGTH = 1024

BUCKET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_REPEATED_SLASHES = re.compile(r"/{2,}")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def _random_id(length: int) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def generate_bucket_id() -> str:
    return _random_id(BUCKET_ID_LENGTH)


def generate_short_id() -> str:
    return _random_id(SHORT_ID_LENGTH)


def is_valid_bucket_id(bucket_id: str) -> bool:
    return bool(bucket_id) and BUCKET_ID_PATTERN.match(bucket_id) is not None


def sanitize_path(raw: str) -> str:
    """Trim whitespace, strip leading slashes and collapse repeated slashes."""

    cleaned = (raw or "").strip().lstrip("/")
    return _REPEATED_SLASHES.sub("/", cleaned)


class BucketPath(str):
    """A normalized, forward-slash path relative to a bucket root."""

    def __new__(cls, raw: str) -> "BucketPath":
        cleaned = sanitize_path(raw)
        if not cleaned:
            raise UnsafePathError("Invalid path", "The path is empty.")
        if len(cleaned) > MAX_PATH_LENGTH:
            raise UnsafePathError("Invalid path", f"Paths are limited to {MAX_PATH_LENGTH} characters.")
        if "\\" in cleaned or _CONTROL_CHARS.search(cleaned):
            raise UnsafePathError("Invalid path", "Backslashes and control characters are not allowed.")
        segments = cleaned.split("/")
        if any(segment in {"", ".", ".."} for segment in segments):
            raise UnsafePathError("Path traversal rejected")
        return super().__new__(cls, cleaned)

    @classmethod
    def parse(cls, raw: str) -> "BucketPath":
        return cls(raw)

    @property
    def parts(self) -> Tuple[str, ...]:
        return tuple(self.split("/"))

    @property
    def name(self) -> str:
        return self.parts[-1]


def repair_legacy_encoding(name: str) -> str:
    """Undo UTF-8 bytes that were decoded as ISO-8859-1.

    Names that already contain characters above U+00FF were decoded correctly (for
    example from a ``filename*=UTF-8''`` parameter) and are returned unchanged. Names
    that do not form valid UTF-8 once turned back into bytes were genuinely single-byte
    encoded and are kept as well.
    """

    if not name or any(ord(char) > 0xFF for char in name):
        return name
    try:
        decoded = name.encode("latin-1").decode("utf-8")
    except UnicodeDecodeError:
        return name
    if "\ufffd" in decoded:
        return name
    return decoded


def encode_path(path: str) -> str:
    """Percent-encode each path segment for use in URLs, keeping ``/``."""

    return "/".join(quote(segment, safe="") for segment in path.split("/"))
