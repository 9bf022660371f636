"""Stateless signed capability tokens.

A token is ``base64url(payload + "." + signature)`` where the payload is a
``:``-delimited field list ending with the expiry timestamp and the signature is an
HMAC-SHA256 of the payload bytes keyed by the server secret. Nothing is stored server
side: rotating the secret is the only way to revoke tokens before they expire.
"""

import hashlib
import logging
import re
import time
from secrets import compare_digest
from typing import Callable, NamedTuple, Optional, Sequence, Tuple, Union

from itsdangerous import BadData, BadSignature, Signer
from itsdangerous.encoding import base64_decode, base64_encode

PAYLOAD_DELIMITER = ":"
SIGNATURE_SEPARATOR = "."

DASHBOARD_TOKEN_TTL_SECONDS = 24 * 3600
UPLOAD_TOKEN_TTL_SECONDS = 3600

INVALID_MALFORMED = "malformed"
INVALID_SIGNATURE = "bad_signature"
INVALID_EXPIRED = "expired"

_TIMESTAMP_PATTERN = re.compile(r"^[0-9]{1,12}$")

logger = logging.getLogger("bucketstore.security")


class TokenPayload(NamedTuple):
    expires_at: int
    bucket_id: Optional[str] = None


def serialize_payload(payload: TokenPayload) -> str:
    fields = [] if payload.bucket_id is None else [payload.bucket_id]
    fields.append(str(int(payload.expires_at)))
    for field in fields:
        if not field or PAYLOAD_DELIMITER in field or SIGNATURE_SEPARATOR in field:
            raise ValueError(f"Token field {field!r} cannot be serialized")
    return PAYLOAD_DELIMITER.join(fields)


def parse_payload(serialized: str) -> TokenPayload:
    fields = serialized.split(PAYLOAD_DELIMITER)
    if len(fields) == 1:
        bucket_id, expires_at = None, fields[0]
    elif len(fields) == 2:
        bucket_id, expires_at = fields
        if not bucket_id:
            raise ValueError("Empty bucket id")
    else:
        raise ValueError("Unexpected field count")
    if not _TIMESTAMP_PATTERN.match(expires_at):
        raise ValueError("Invalid expiry")
    return TokenPayload(expires_at=int(expires_at), bucket_id=bucket_id)


def _signer(secret: Union[str, bytes]) -> Signer:
    return Signer(
        secret,
        sep=SIGNATURE_SEPARATOR,
        key_derivation="none",
        digest_method=hashlib.sha256,
    )


def issue_token(secret: Union[str, bytes], payload: TokenPayload) -> str:
    signed = _signer(secret).sign(serialize_payload(payload).encode("utf-8"))
    return base64_encode(signed).decode("ascii")


def inspect_token(
    secret: Union[str, bytes], token: str, now: float
) -> Tuple[Optional[TokenPayload], Optional[str]]:
    """Return ``(payload, None)`` for a valid token or ``(None, reason)``."""

    if not secret or not token or not isinstance(token, str):
        return None, INVALID_MALFORMED
    try:
        encoded = token.encode("ascii")
        signed = base64_decode(encoded)
    except (UnicodeEncodeError, BadData):
        return None, INVALID_MALFORMED
    # Only the canonical encoding is accepted, so every character of the token counts.
    if base64_encode(signed) != encoded:
        return None, INVALID_MALFORMED

    try:
        raw_payload = _signer(secret).unsign(signed)
    except BadSignature:
        return None, INVALID_SIGNATURE

    try:
        payload = parse_payload(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None, INVALID_MALFORMED

    if payload.expires_at <= int(now):
        return None, INVALID_EXPIRED
    return payload, None


def verify_token(secret: Union[str, bytes], token: str, now: float) -> Optional[TokenPayload]:
    payload, _ = inspect_token(secret, token, now)
    return payload


class TokenCodec:
    """Issue and verify dashboard and upload tokens with one server secret."""

    def __init__(self, secret: Union[str, bytes], clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self._clock = clock

    def _expiry(self, ttl_seconds: float) -> int:
        return int(self._clock()) + max(int(ttl_seconds), 1)

    def _check(self, token: str, kind: str) -> Optional[TokenPayload]:
        payload, reason = inspect_token(self._secret, token, self._clock())
        if payload is None:
            logger.debug("token_rejected kind=%s reason=%s", kind, reason)
        return payload

    def issue_dashboard_token(self, ttl_seconds: float = DASHBOARD_TOKEN_TTL_SECONDS) -> str:
        return issue_token(self._secret, TokenPayload(expires_at=self._expiry(ttl_seconds)))

    def verify_dashboard_token(self, token: str) -> bool:
        payload = self._check(token, "dashboard")
        return payload is not None and payload.bucket_id is None

    def issue_upload_token(self, bucket_id: str, ttl_seconds: float = UPLOAD_TOKEN_TTL_SECONDS) -> str:
        return issue_token(
            self._secret,
            TokenPayload(expires_at=self._expiry(ttl_seconds), bucket_id=bucket_id),
        )

    def verify_upload_token(self, token: str) -> Optional[str]:
        """Return the bucket id the token was minted for, or ``None``."""

        payload = self._check(token, "upload")
        if payload is None or payload.bucket_id is None:
            return None
        return payload.bucket_id

    def verify_upload_token_for(self, token: str, bucket_id: str) -> bool:
        granted = self.verify_upload_token(token)
        if granted is None or not bucket_id:
            return False
        if not compare_digest(granted.encode("utf-8"), bucket_id.encode("utf-8")):
            logger.warning("upload_token_bucket_mismatch")
            return False
        return True
