"""The store object shared by request handlers and the background sweeper."""

import logging
import secrets
import time
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union

from .content import ContentStore
from .delivery import DeliveryEngine, DeliveryResult
from .errors import AuthError, MalformedInputError, NotFoundError
from .expiry import explicit_seconds, parse_expiry
from .ingest import IngestPipeline, UploadedFile
from .metadata import ApiKey, Bucket, MetadataStore, StoredFile
from .paths import BucketPath
from .sweeper import Sweeper
from .tokens import TokenCodec

logger = logging.getLogger("bucketstore.lifecycle")

SUMMARY_README_LIMIT = 1024 * 1024
MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 4000


class AuthResult(NamedTuple):
    kind: str
    key_hash: Optional[str] = None
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.kind == "admin"

    def can_manage(self, bucket: Bucket) -> bool:
        return self.is_admin or (self.key_hash is not None and self.key_hash == bucket.key_hash)


ADMIN = AuthResult(kind="admin", name="admin")


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{round(size / 1024)}KB"
    return f"{round(size / (1024 * 1024))}MB"


def _clean_text(value: Any, field: str, limit: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedInputError(f"Invalid {field}", f"'{field}' must be a string.")
    cleaned = value.strip()
    if len(cleaned) > limit:
        raise MalformedInputError(f"Invalid {field}", f"'{field}' is limited to {limit} characters.")
    return cleaned


def _expires_in_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedInputError("Invalid expires_in", "Use a preset like '1d', 'never' or a number of seconds.")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    raise MalformedInputError("Invalid expires_in", "Use a preset like '1d', 'never' or a number of seconds.")


class BucketStore:
    """Owns the metadata store, content store, token codec and sweeper.

    Built once per application and passed to whatever needs it; nothing in the package
    keeps module-level state.
    """

    def __init__(self, settings: Mapping[str, Any], clock: Callable[[], float] = time.time) -> None:
        self.settings = dict(settings)
        self.clock = clock
        self.metadata = MetadataStore(self.settings["DB_PATH"], clock=clock)
        self.content = ContentStore(self.settings["CONTENT_DIR"])
        self.tokens = TokenCodec(self.settings["SECRET_KEY"], clock=clock)
        self.delivery = DeliveryEngine(self.metadata, self.content, clock=clock)
        self.ingest = IngestPipeline(self.metadata, self.content)
        self.sweeper = Sweeper(
            self.metadata,
            self.content,
            interval_minutes=self.settings.get("sweep_interval_minutes", 15.0),
            clock=clock,
        )
        self._admin_key = self.settings.get("ADMIN_API_KEY") or ""

    # Lifecycle

    def start(self) -> None:
        self.sweeper.start()

    def close(self) -> None:
        self.sweeper.shutdown(wait=False)

    # Authentication

    def authenticate(self, raw_key: Optional[str]) -> AuthResult:
        if not raw_key:
            raise AuthError("Missing authentication")
        if self._admin_key and secrets.compare_digest(
            raw_key.encode("utf-8"), self._admin_key.encode("utf-8")
        ):
            return ADMIN
        record = self.metadata.authenticate_key(raw_key)
        if record is None:
            raise AuthError("Invalid API key", "Check your API key. It may have been revoked.")
        return AuthResult(kind="key", key_hash=record.key_hash, name=record.name)

    def create_api_key(self, name: Any) -> Tuple[str, ApiKey]:
        cleaned = _clean_text(name, "name", MAX_NAME_LENGTH)
        if not cleaned:
            raise MalformedInputError("Missing name", "Provide a non-empty 'name' string in the request body.")
        return self.metadata.create_api_key(cleaned)

    def list_api_keys(self) -> List[ApiKey]:
        return self.metadata.list_api_keys()

    def revoke_api_key(self, prefix: str) -> ApiKey:
        revoked = self.metadata.delete_api_key(prefix)
        if revoked is None:
            raise NotFoundError("Key not found", f"No API key with prefix '{prefix}' exists.")
        return revoked

    # Buckets

    def create_bucket(
        self,
        owner_key_hash: str,
        name: Any,
        owner: str = "",
        description: Any = None,
        purpose: Any = None,
        expires_in: Any = None,
    ) -> Bucket:
        cleaned_name = _clean_text(name, "name", MAX_NAME_LENGTH)
        if not cleaned_name:
            raise MalformedInputError("Missing name", "Provide a non-empty 'name' string in the request body.")
        expires_value = _expires_in_value(expires_in)
        if expires_value is None:
            expires_value = self.settings.get("default_expires_in", "1w")
        return self.metadata.create_bucket(
            name=cleaned_name,
            key_hash=owner_key_hash,
            owner=owner,
            description=_clean_text(description, "description", MAX_DESCRIPTION_LENGTH) or None,
            purpose=_clean_text(purpose, "for", MAX_DESCRIPTION_LENGTH) or None,
            expires_at=parse_expiry(expires_value, self.clock()),
        )

    def get_bucket(self, bucket_id: str, include_expired: bool = False) -> Optional[Bucket]:
        """Return the bucket, or ``None`` when it is missing or (unless *include_expired*) expired."""

        return self.metadata.get_bucket(bucket_id, include_expired=include_expired)

    def require_bucket(self, bucket_id: str) -> Bucket:
        bucket = self.get_bucket(bucket_id)
        if bucket is None:
            raise NotFoundError("Bucket not found", "This bucket does not exist or has expired.")
        return bucket

    def list_buckets(self, auth: AuthResult) -> List[Bucket]:
        return self.metadata.list_buckets(None if auth.is_admin else auth.key_hash)

    def update_bucket(
        self,
        bucket_id: str,
        name: Any = None,
        description: Any = None,
        expires_in: Any = None,
    ) -> Bucket:
        self.require_bucket(bucket_id)
        changes: Dict[str, Any] = {}
        cleaned_name = _clean_text(name, "name", MAX_NAME_LENGTH)
        if cleaned_name:
            changes["name"] = cleaned_name
        if description is not None:
            changes["description"] = _clean_text(description, "description", MAX_DESCRIPTION_LENGTH) or None
        expires_value = _expires_in_value(expires_in)
        if expires_value is not None:
            changes["expires_at"] = parse_expiry(expires_value, self.clock())
        if not changes:
            raise MalformedInputError(
                "No updates",
                "Provide at least one field to update: name, description, or expires_in.",
            )
        return self.metadata.update_bucket(bucket_id, **changes)

    def delete_bucket(self, bucket_id: str) -> bool:
        """Delete content, then metadata. Deleting an absent bucket is a no-op."""

        existed = self.metadata.get_bucket(bucket_id, include_expired=True) is not None
        self.content.delete_bucket(bucket_id)
        self.metadata.delete_bucket(bucket_id)
        if existed:
            logger.info("bucket_deleted bucket=%s", bucket_id)
        return existed

    # Files

    def list_files(self, bucket_id: str) -> List[StoredFile]:
        self.require_bucket(bucket_id)
        return self.metadata.list_files(bucket_id)

    def delete_file(self, bucket_id: str, path: Union[str, BucketPath]) -> StoredFile:
        self.require_bucket(bucket_id)
        relative = BucketPath.parse(path)
        record = self.metadata.get_file(bucket_id, relative)
        if record is None:
            raise NotFoundError("File not found", f"No file at path '{relative}' in this bucket.")
        # The row goes first so a reader never finds a row without its bytes.
        self.metadata.delete_file(bucket_id, relative)
        self.content.delete_file(bucket_id, relative)
        logger.info("file_deleted bucket=%s path=%s", bucket_id, relative)
        return record

    def ingest_upload(self, bucket_id: str, stream: BinaryIO, boundary: Union[str, bytes]) -> List[UploadedFile]:
        self.require_bucket(bucket_id)
        return self.ingest.ingest(bucket_id, stream, boundary)

    def download_raw(self, bucket_id: str, path: str, range_header: Optional[str] = None) -> DeliveryResult:
        return self.delivery.serve(bucket_id, path, range_header)

    def download_archive(self, bucket_id: str) -> DeliveryResult:
        return self.delivery.archive(bucket_id)

    def resolve_short_id(self, short_id: str) -> StoredFile:
        record = self.metadata.get_file_by_short_id(short_id)
        if record is None:
            raise NotFoundError("Not found", "No file with this short ID.")
        if self.get_bucket(record.bucket_id) is None:
            raise NotFoundError("Not found", "This file's bucket has expired.")
        return record

    def bucket_summary(self, bucket_id: str) -> str:
        """Plain-text overview of a bucket, with its README inlined when present."""

        bucket = self.require_bucket(bucket_id)
        files = self.metadata.list_files(bucket_id)

        lines = [f"# {bucket.name}", f"Owner: {bucket.owner}"]
        if bucket.purpose:
            lines.append(f"For: {bucket.purpose}")
        if bucket.description:
            lines.append(f"Description: {bucket.description}")
        lines.append(f"Files: {len(files)}")
        lines.append("")
        lines.append("## File Listing")
        for record in files:
            lines.append(f"- {record.path} ({format_size(record.size)}, {record.mime_type})")

        readme = next((record for record in files if record.path.lower() == "readme.md"), None)
        if readme is not None:
            handle = self.content.open(bucket_id, readme.path)
            if handle is not None:
                with handle:
                    text = handle.read(SUMMARY_README_LIMIT).decode("utf-8", errors="replace")
                lines.extend(["", "## README", text])
        lines.append("")
        return "\n".join(lines)

    # Tokens

    def _token_ttl(self, config_key: str) -> int:
        return max(1, int(float(self.settings.get(config_key, 1.0)) * 3600))

    def issue_dashboard_token(self, ttl_seconds: Optional[int] = None) -> str:
        ttl = ttl_seconds if ttl_seconds is not None else self._token_ttl("dashboard_token_hours")
        return self.tokens.issue_dashboard_token(ttl)

    def verify_dashboard_token(self, token: str) -> bool:
        return self.tokens.verify_dashboard_token(token)

    def issue_upload_token(self, bucket_id: str, ttl: Union[int, str, None] = None) -> Tuple[str, int]:
        """Mint an upload token for a live bucket and return ``(token, ttl_seconds)``.

        A *ttl* that is neither a preset nor a positive number of seconds gets the
        configured upload token lifetime.
        """

        self.require_bucket(bucket_id)
        ttl_seconds = None
        if isinstance(ttl, int) and not isinstance(ttl, bool):
            ttl_seconds = ttl if ttl > 0 else None
        elif isinstance(ttl, str):
            ttl_seconds = explicit_seconds(ttl)
        if ttl_seconds is None:
            ttl_seconds = self._token_ttl("upload_token_hours")
        return self.tokens.issue_upload_token(bucket_id, ttl_seconds), ttl_seconds

    def verify_upload_token(self, token: str) -> Optional[str]:
        return self.tokens.verify_upload_token(token)

    def verify_upload_token_for(self, token: str, bucket_id: str) -> bool:
        return self.tokens.verify_upload_token_for(token, bucket_id)

    # Maintenance

    def sweep_expired(self) -> int:
        return self.sweeper.sweep_expired()

    def statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.metadata.statistics())
        stats["sweeper_running"] = self.sweeper.running
        stats["sweeper_state"] = self.sweeper.state.value
        return stats
