"""SQLite-backed records for buckets, files and API keys.

Nothing here is cached: every call opens its own connection so the rows read always
reflect deletions made by the sweeper or by other requests.
"""

import hashlib
import logging
import secrets
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Generator, List, NamedTuple, Optional, Tuple, Union

from .errors import NotFoundError
from .expiry import is_expired
from .paths import BucketPath, generate_bucket_id, generate_short_id

logger = logging.getLogger("bucketstore.metadata")

API_KEY_PREFIX = "bk_"
API_KEY_DISPLAY_LENGTH = 8
MAX_ID_ATTEMPTS = 5


class Bucket(NamedTuple):
    id: str
    name: str
    key_hash: str
    owner: str
    description: Optional[str]
    purpose: Optional[str]
    created_at: int
    expires_at: Optional[int]


class StoredFile(NamedTuple):
    id: int
    bucket_id: str
    path: str
    size: int
    mime_type: str
    short_id: str
    created_at: int


class ApiKey(NamedTuple):
    key_hash: str
    prefix: str
    name: str
    created_at: int
    last_used_at: int
    bucket_count: int = 0


SCHEMA = """
CREATE TABLE IF NOT EXISTS api_keys (
    key_hash TEXT PRIMARY KEY,
    prefix TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    last_used_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS buckets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    key_hash TEXT NOT NULL,
    owner TEXT NOT NULL,
    description TEXT,
    purpose TEXT,
    created_at INTEGER NOT NULL,
    expires_at INTEGER
);
CREATE INDEX IF NOT EXISTS idx_buckets_expires_at ON buckets(expires_at);
CREATE INDEX IF NOT EXISTS idx_buckets_key_hash ON buckets(key_hash);
CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bucket_id TEXT NOT NULL REFERENCES buckets(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    short_id TEXT NOT NULL UNIQUE,
    created_at INTEGER NOT NULL,
    UNIQUE(bucket_id, path)
);
"""

_BUCKET_COLUMNS = "id, name, key_hash, owner, description, purpose, created_at, expires_at"
_FILE_COLUMNS = "id, bucket_id, path, size, mime_type, short_id, created_at"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def _bucket_from_row(row: sqlite3.Row) -> Bucket:
    return Bucket(*(row[column] for column in Bucket._fields))


def _file_from_row(row: sqlite3.Row) -> StoredFile:
    return StoredFile(*(row[column] for column in StoredFile._fields))


class MetadataStore:
    def __init__(self, db_path: Union[str, Path], clock: Callable[[], float] = time.time) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.get_db() as conn:
            conn.executescript(SCHEMA)

    # Buckets

    def create_bucket(
        self,
        name: str,
        key_hash: str,
        owner: str,
        description: Optional[str] = None,
        purpose: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> Bucket:
        created_at = self._now()
        for _ in range(MAX_ID_ATTEMPTS):
            bucket = Bucket(
                id=generate_bucket_id(),
                name=name,
                key_hash=key_hash,
                owner=owner,
                description=description,
                purpose=purpose,
                created_at=created_at,
                expires_at=expires_at,
            )
            try:
                with self.get_db() as conn:
                    conn.execute(
                        f"INSERT INTO buckets ({_BUCKET_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        tuple(bucket),
                    )
            except sqlite3.IntegrityError:
                logger.warning("bucket_id_collision bucket=%s", bucket.id)
                continue
            logger.info("bucket_created bucket=%s owner=%s expires_at=%s", bucket.id, owner, expires_at)
            return bucket
        raise RuntimeError("Could not allocate a unique bucket id")

    def get_bucket(self, bucket_id: str, include_expired: bool = False) -> Optional[Bucket]:
        with self.get_db() as conn:
            row = conn.execute(
                f"SELECT {_BUCKET_COLUMNS} FROM buckets WHERE id = ?",
                (bucket_id,),
            ).fetchone()
        if row is None:
            return None
        bucket = _bucket_from_row(row)
        if not include_expired and is_expired(bucket.expires_at, self._clock()):
            return None
        return bucket

    def list_buckets(self, key_hash: Optional[str] = None) -> List[Bucket]:
        """Return non-expired buckets, newest first, optionally limited to one owner."""

        query = f"SELECT {_BUCKET_COLUMNS} FROM buckets WHERE (expires_at IS NULL OR expires_at >= ?)"
        params: Tuple = (self._now(),)
        if key_hash is not None:
            query += " AND key_hash = ?"
            params += (key_hash,)
        query += " ORDER BY created_at DESC, id"
        with self.get_db() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_bucket_from_row(row) for row in rows]

    def update_bucket(self, bucket_id: str, **changes) -> Bucket:
        allowed = {"name", "description", "expires_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update bucket fields: {', '.join(sorted(unknown))}")
        with self.get_db() as conn:
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in sorted(changes))
                values = tuple(changes[column] for column in sorted(changes))
                cursor = conn.execute(
                    f"UPDATE buckets SET {assignments} WHERE id = ?",
                    values + (bucket_id,),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Bucket not found")
            row = conn.execute(
                f"SELECT {_BUCKET_COLUMNS} FROM buckets WHERE id = ?",
                (bucket_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError("Bucket not found")
        logger.info("bucket_updated bucket=%s fields=%s", bucket_id, ",".join(sorted(changes)))
        return _bucket_from_row(row)

    def delete_bucket(self, bucket_id: str) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute("DELETE FROM buckets WHERE id = ?", (bucket_id,))
        return cursor.rowcount > 0

    def expired_bucket_ids(self, now: Optional[float] = None) -> List[str]:
        cutoff = self._now() if now is None else int(now)
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT id FROM buckets WHERE expires_at IS NOT NULL AND expires_at < ? ORDER BY expires_at",
                (cutoff,),
            ).fetchall()
        return [row["id"] for row in rows]

    def known_bucket_ids(self) -> List[str]:
        with self.get_db() as conn:
            rows = conn.execute("SELECT id FROM buckets").fetchall()
        return [row["id"] for row in rows]

    # Files

    def list_files(self, bucket_id: str) -> List[StoredFile]:
        with self.get_db() as conn:
            rows = conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE bucket_id = ? ORDER BY path",
                (bucket_id,),
            ).fetchall()
        return [_file_from_row(row) for row in rows]

    def get_file(self, bucket_id: str, path: str) -> Optional[StoredFile]:
        with self.get_db() as conn:
            row = conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE bucket_id = ? AND path = ?",
                (bucket_id, path),
            ).fetchone()
        return _file_from_row(row) if row else None

    def get_file_by_short_id(self, short_id: str) -> Optional[StoredFile]:
        with self.get_db() as conn:
            row = conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE short_id = ?",
                (short_id,),
            ).fetchone()
        return _file_from_row(row) if row else None

    def upsert_file(self, bucket_id: str, path: BucketPath, size: int, mime_type: str) -> StoredFile:
        """Replace the row for ``(bucket_id, path)`` with a new one and a fresh short id."""

        created_at = self._now()
        for _ in range(MAX_ID_ATTEMPTS):
            short_id = generate_short_id()
            try:
                with self.get_db() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    conn.execute(
                        "DELETE FROM files WHERE bucket_id = ? AND path = ?",
                        (bucket_id, str(path)),
                    )
                    cursor = conn.execute(
                        """
                        INSERT INTO files (bucket_id, path, size, mime_type, short_id, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (bucket_id, str(path), size, mime_type, short_id, created_at),
                    )
                    file_id = cursor.lastrowid
            except sqlite3.IntegrityError as error:
                if "short_id" not in str(error):
                    raise
                logger.warning("short_id_collision short_id=%s", short_id)
                continue
            return StoredFile(
                id=file_id,
                bucket_id=bucket_id,
                path=str(path),
                size=size,
                mime_type=mime_type,
                short_id=short_id,
                created_at=created_at,
            )
        raise RuntimeError("Could not allocate a unique short id")

    def delete_file(self, bucket_id: str, path: str) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM files WHERE bucket_id = ? AND path = ?",
                (bucket_id, path),
            )
        return cursor.rowcount > 0

    # API keys

    def create_api_key(self, name: str) -> Tuple[str, ApiKey]:
        """Create a key and return ``(raw_key, record)``. The raw key is not stored."""

        now = self._now()
        for _ in range(MAX_ID_ATTEMPTS):
            raw_key = API_KEY_PREFIX + secrets.token_hex(32)
            record = ApiKey(
                key_hash=hash_api_key(raw_key),
                prefix=raw_key[:API_KEY_DISPLAY_LENGTH],
                name=name,
                created_at=now,
                last_used_at=now,
            )
            try:
                with self.get_db() as conn:
                    conn.execute(
                        """
                        INSERT INTO api_keys (key_hash, prefix, name, created_at, last_used_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        tuple(record)[:5],
                    )
            except sqlite3.IntegrityError:
                continue
            logger.info("api_key_created prefix=%s name=%s", record.prefix, name)
            return raw_key, record
        raise RuntimeError("Could not allocate a unique API key prefix")

    def authenticate_key(self, raw_key: str) -> Optional[ApiKey]:
        key_hash = hash_api_key(raw_key)
        now = self._now()
        with self.get_db() as conn:
            cursor = conn.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE key_hash = ?",
                (now, key_hash),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT key_hash, prefix, name, created_at, last_used_at FROM api_keys WHERE key_hash = ?",
                (key_hash,),
            ).fetchone()
        return ApiKey(*row) if row else None

    def list_api_keys(self) -> List[ApiKey]:
        with self.get_db() as conn:
            rows = conn.execute(
                """
                SELECT k.key_hash, k.prefix, k.name, k.created_at, k.last_used_at,
                       COUNT(b.id) AS bucket_count
                FROM api_keys k
                LEFT JOIN buckets b ON b.key_hash = k.key_hash
                GROUP BY k.key_hash
                ORDER BY k.created_at, k.prefix
                """
            ).fetchall()
        return [ApiKey(*row) for row in rows]

    def get_api_key(self, prefix: str) -> Optional[ApiKey]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT key_hash, prefix, name, created_at, last_used_at FROM api_keys WHERE prefix = ?",
                (prefix,),
            ).fetchone()
        return ApiKey(*row) if row else None

    def delete_api_key(self, prefix: str) -> Optional[ApiKey]:
        """Revoke the key with *prefix*. Buckets it created are kept."""

        existing = self.get_api_key(prefix)
        if existing is None:
            return None
        with self.get_db() as conn:
            conn.execute("DELETE FROM api_keys WHERE prefix = ?", (prefix,))
        logger.info("api_key_revoked prefix=%s", prefix)
        return existing

    def statistics(self) -> Dict[str, int]:
        with self.get_db() as conn:
            buckets = conn.execute("SELECT COUNT(*) FROM buckets").fetchone()[0]
            row = conn.execute("SELECT COUNT(*), COALESCE(SUM(size), 0) FROM files").fetchone()
            keys = conn.execute("SELECT COUNT(*) FROM api_keys").fetchone()[0]
        return {"buckets": buckets, "files": row[0], "total_bytes": row[1], "api_keys": keys}
