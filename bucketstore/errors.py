from typing import Dict


class BucketStoreError(Exception):
    """Base error carrying the HTTP status and a hint for the caller."""

    status = 500
    default_hint = ""

    def __init__(self, message: str, hint: str = "", status: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint
        if status:
            self.status = status

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message, "hint": self.hint}


class NotFoundError(BucketStoreError):
    """Missing or expired resource. Both cases look the same to the caller."""

    status = 404
    default_hint = "The resource does not exist or has expired."


class AuthError(BucketStoreError):
    status = 401
    default_hint = "Include an Authorization: Bearer <key> header."


class ForbiddenError(BucketStoreError):
    status = 403


class MalformedInputError(BucketStoreError):
    status = 400


class UnsafePathError(MalformedInputError):
    """Raised when a path would leave its bucket root."""

    default_hint = "Paths must be relative and stay inside the bucket."


class IntegrityFault(BucketStoreError):
    """A metadata row exists but its bytes are missing from the content store."""

    status = 500
    default_hint = "The file record exists but the data is missing from storage."
