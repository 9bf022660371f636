import atexit
import os
import shutil
import sqlite3
import time
import uuid
from functools import wraps
from typing import Any, Callable, Dict, Mapping, Optional

from flask import Blueprint, Flask, Response, current_app, g, jsonify, redirect, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from .config import BYTES_PER_MB, build_settings
from .delivery import DeliveryResult
from .errors import AuthError, BucketStoreError, ForbiddenError, IntegrityFault, MalformedInputError, NotFoundError
from .expiry import seconds_remaining
from .log import configure_logging, get_logger, sanitize_log_value
from .metadata import ApiKey, Bucket, StoredFile
from .paths import encode_path
from .service import AuthResult, BucketStore

lifecycle_logger = get_logger("lifecycle")
security_logger = get_logger("security")

EXTENSION_KEY = "bucketstore"

limiter = Limiter(key_func=get_remote_address)

api = Blueprint("api", __name__)


class AmbiguousAPIKeyError(Exception):
    """Raised when a request carries two different API keys."""


def get_store() -> BucketStore:
    return current_app.extensions[EXTENSION_KEY]


def _rate(config_key: str, default: int, period: str) -> str:
    try:
        value = max(1, int(float(current_app.config.get(config_key, default))))
    except (TypeError, ValueError):
        value = default
    return f"{value} per {period}"


def upload_rate_limit_string() -> str:
    return _rate("upload_rate_limit_per_hour", 100, "hour")


def download_rate_limit_string() -> str:
    return _rate("download_rate_limit_per_minute", 120, "minute")


# Authentication


def _extract_api_key_from_request() -> Optional[str]:
    candidates = []

    header_key = request.headers.get("X-API-Key")
    if header_key:
        candidates.append(header_key.strip())

    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())
    elif authorization.lower().startswith("token "):
        candidates.append(authorization[6:].strip())

    unique = {candidate for candidate in candidates if candidate}
    if len(unique) > 1:
        raise AmbiguousAPIKeyError("Multiple API keys provided")
    return next(iter(unique)) if unique else None


def _authenticate_request() -> AuthResult:
    try:
        provided = _extract_api_key_from_request()
    except AmbiguousAPIKeyError:
        security_logger.warning(
            "api_auth_ambiguous_keys endpoint=%s method=%s", request.endpoint, request.method
        )
        raise MalformedInputError(
            "Multiple API keys provided", "Send a single key in Authorization or X-API-Key."
        ) from None
    try:
        auth = get_store().authenticate(provided)
    except AuthError:
        security_logger.warning(
            "api_auth_failed endpoint=%s method=%s", request.endpoint, request.method
        )
        raise
    g.auth = auth
    return auth


def require_api_auth(admin: bool = False):
    def decorator(view: Callable):
        @wraps(view)
        def wrapped(*args, **kwargs):
            auth = _authenticate_request()
            if admin and not auth.is_admin:
                raise ForbiddenError("Forbidden", "Only the admin key can use this endpoint.")
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _managed_bucket(bucket_id: str, action: str) -> Bucket:
    bucket = get_store().require_bucket(bucket_id)
    if not g.auth.can_manage(bucket):
        raise ForbiddenError("Forbidden", f"You can only {action} buckets you own.")
    return bucket


def _json_body(hint: str, required: bool = True) -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None and not required:
        return {}
    if not isinstance(payload, dict):
        raise MalformedInputError("Invalid JSON", hint)
    return payload


# Serialization


def _base_url() -> str:
    return current_app.config["BASE_URL"]


def _bucket_urls(bucket_id: str) -> Dict[str, str]:
    base = _base_url()
    return {
        "api_url": f"{base}/api/buckets/{bucket_id}",
        "summary_url": f"{base}/api/buckets/{bucket_id}/summary",
        "zip_url": f"{base}/api/buckets/{bucket_id}/zip",
    }


def _bucket_payload(bucket: Bucket) -> Dict[str, Any]:
    payload = {
        "id": bucket.id,
        "name": bucket.name,
        "owner": bucket.owner,
        "description": bucket.description,
        "for": bucket.purpose,
        "created_at": bucket.created_at,
        "expires_at": bucket.expires_at,
        "expires_in_seconds": seconds_remaining(bucket.expires_at, get_store().clock()),
    }
    payload.update(_bucket_urls(bucket.id))
    return payload


def _file_payload(bucket_id: str, path: str, size: int, mime_type: str, short_id: str, created_at: Optional[int] = None) -> Dict[str, Any]:
    base = _base_url()
    payload = {
        "path": path,
        "size": size,
        "mime_type": mime_type,
        "short_id": short_id,
        "raw_url": f"{base}/raw/{bucket_id}/{encode_path(path)}",
        "short_url": f"{base}/s/{short_id}",
    }
    if created_at is not None:
        payload["created_at"] = created_at
    return payload


def _stored_file_payload(record: StoredFile) -> Dict[str, Any]:
    return _file_payload(
        record.bucket_id, record.path, record.size, record.mime_type, record.short_id, record.created_at
    )


def _api_key_payload(record: ApiKey) -> Dict[str, Any]:
    return {
        "prefix": record.prefix,
        "name": record.name,
        "created_at": record.created_at,
        "last_used_at": record.last_used_at,
        "bucket_count": record.bucket_count,
    }


def _delivery_response(result: DeliveryResult) -> Response:
    return Response(
        result.body,
        status=result.status,
        headers=result.headers,
        direct_passthrough=True,
    )


# Routes


@api.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True
    store = get_store()

    try:
        checks["statistics"] = store.statistics()
        checks["database"] = "ok"
    except sqlite3.Error as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        usage = shutil.disk_usage(store.content.root)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        checks["disk_space_status"] = "critical" if disk_free_gb < 1 else "ok"
        if disk_free_gb < 1:
            healthy = False
    except OSError as error:
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = store.content.root / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink()
        checks["content_writable"] = "ok"
    except OSError as error:
        checks["content_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    scheduler = store.sweeper.scheduler
    job = scheduler.get_job("sweep_expired_buckets") if scheduler is not None else None
    checks["sweeper_running"] = store.sweeper.running
    checks["sweeper_next_run"] = job.next_run_time.isoformat() if job and job.next_run_time else None

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), (200 if healthy else 503)


@api.route("/api/buckets", methods=["POST"])
@require_api_auth()
def create_bucket():
    if g.auth.is_admin:
        raise ForbiddenError("Forbidden", "Use an API key to create buckets, not the admin key.")
    body = _json_body("Request body must be valid JSON with at least a 'name' field.")
    bucket = get_store().create_bucket(
        g.auth.key_hash,
        body.get("name"),
        owner=g.auth.name,
        description=body.get("description"),
        purpose=body.get("for"),
        expires_in=body.get("expires_in"),
    )
    return jsonify(_bucket_payload(bucket)), 201


@api.route("/api/buckets", methods=["GET"])
@require_api_auth()
def list_buckets():
    buckets = get_store().list_buckets(g.auth)
    return jsonify({"buckets": [_bucket_payload(bucket) for bucket in buckets]})


@api.route("/api/buckets/<bucket_id>", methods=["GET"])
def get_bucket(bucket_id: str):
    store = get_store()
    bucket = store.require_bucket(bucket_id)
    payload = _bucket_payload(bucket)
    payload["files"] = [_stored_file_payload(record) for record in store.list_files(bucket_id)]
    return jsonify(payload)


@api.route("/api/buckets/<bucket_id>", methods=["PATCH"])
@require_api_auth()
def update_bucket(bucket_id: str):
    _managed_bucket(bucket_id, "modify")
    body = _json_body("Request body must be valid JSON.")
    bucket = get_store().update_bucket(
        bucket_id,
        name=body.get("name"),
        description=body.get("description"),
        expires_in=body.get("expires_in"),
    )
    return jsonify(_bucket_payload(bucket))


@api.route("/api/buckets/<bucket_id>", methods=["DELETE"])
@require_api_auth()
def delete_bucket(bucket_id: str):
    store = get_store()
    # Owners may still remove a bucket that has expired but not yet been swept.
    bucket = store.get_bucket(bucket_id, include_expired=True)
    if bucket is None:
        raise NotFoundError("Bucket not found", "This bucket does not exist.")
    if not g.auth.can_manage(bucket):
        raise ForbiddenError("Forbidden", "You can only delete buckets you own.")
    store.delete_bucket(bucket_id)
    return jsonify({"deleted": True, "id": bucket_id})


@api.route("/api/buckets/<bucket_id>/upload", methods=["POST"])
@limiter.limit(upload_rate_limit_string)
def upload_files(bucket_id: str):
    store = get_store()
    token = request.args.get("token") or request.headers.get("X-Upload-Token")
    if token:
        granted = store.verify_upload_token(token)
        if granted is None:
            security_logger.warning("upload_token_rejected bucket=%s", sanitize_log_value(bucket_id))
            raise AuthError("Invalid or expired upload token", "Request a new upload link.")
        if not store.verify_upload_token_for(token, bucket_id):
            raise ForbiddenError("Forbidden", "This upload token was issued for a different bucket.")
        store.require_bucket(bucket_id)
    else:
        _authenticate_request()
        _managed_bucket(bucket_id, "upload to")

    if request.mimetype != "multipart/form-data":
        raise MalformedInputError("Invalid content type", "Request must be multipart/form-data.")
    boundary = request.mimetype_params.get("boundary")
    uploaded = store.ingest_upload(bucket_id, request.stream, boundary)
    if not uploaded:
        raise MalformedInputError(
            "No files uploaded", "Include at least one file field in the multipart form data."
        )
    lifecycle_logger.info("upload_completed bucket=%s files=%d", bucket_id, len(uploaded))
    return jsonify(
        {
            "uploaded": [
                _file_payload(bucket_id, item.path, item.size, item.mime_type, item.short_id)
                for item in uploaded
            ]
        }
    ), 201


@api.route("/api/buckets/<bucket_id>/files", methods=["DELETE"])
@require_api_auth()
def delete_file(bucket_id: str):
    _managed_bucket(bucket_id, "delete files from")
    body = _json_body("Request body must be valid JSON with a 'path' field.")
    path = body.get("path")
    if not isinstance(path, str) or not path.strip():
        raise MalformedInputError(
            "Missing path", "Provide a non-empty 'path' string identifying the file to delete."
        )
    record = get_store().delete_file(bucket_id, path)
    return jsonify({"deleted": True, "path": record.path})


@api.route("/api/buckets/<bucket_id>/upload-link", methods=["POST"])
@require_api_auth()
def create_upload_link(bucket_id: str):
    bucket = _managed_bucket(bucket_id, "generate upload links for")
    body = _json_body("Request body must be valid JSON.", required=False)
    expires_in = body.get("expires_in")
    if not isinstance(expires_in, (str, int)) or isinstance(expires_in, bool):
        expires_in = None
    store = get_store()
    token, ttl_seconds = store.issue_upload_token(bucket_id, expires_in)
    return jsonify(
        {
            "upload_url": f"{_base_url()}/api/buckets/{bucket_id}/upload?token={token}",
            "token": token,
            "expires_in": ttl_seconds,
            "expires_at": int(store.clock()) + ttl_seconds,
            "bucket": {"id": bucket.id, "name": bucket.name},
        }
    )


@api.route("/api/buckets/<bucket_id>/zip")
@limiter.limit(download_rate_limit_string)
def download_zip(bucket_id: str):
    return _delivery_response(get_store().download_archive(bucket_id))


@api.route("/api/buckets/<bucket_id>/summary")
def bucket_summary(bucket_id: str):
    try:
        text = get_store().bucket_summary(bucket_id)
    except NotFoundError:
        return Response("Bucket not found or expired.\n", status=404, mimetype="text/plain")
    return Response(text, mimetype="text/plain")


@api.route("/api/keys", methods=["POST"])
@require_api_auth(admin=True)
def create_api_key():
    body = _json_body("Request body must be valid JSON with a 'name' field.")
    raw_key, record = get_store().create_api_key(body.get("name"))
    payload = _api_key_payload(record)
    payload["key"] = raw_key
    return jsonify(payload), 201


@api.route("/api/keys", methods=["GET"])
@require_api_auth(admin=True)
def list_api_keys():
    return jsonify({"keys": [_api_key_payload(record) for record in get_store().list_api_keys()]})


@api.route("/api/keys/<prefix>", methods=["DELETE"])
@require_api_auth(admin=True)
def revoke_api_key(prefix: str):
    record = get_store().revoke_api_key(prefix)
    return jsonify({"deleted": True, "prefix": record.prefix, "name": record.name})


@api.route("/api/admin/dashboard-link")
@require_api_auth(admin=True)
def dashboard_link():
    store = get_store()
    token = store.issue_dashboard_token()
    hours = float(current_app.config.get("dashboard_token_hours", 24.0))
    return jsonify(
        {
            "token": token,
            "action_url": f"{_base_url()}/api/admin/action",
            "expires_in": f"{hours:g}h",
        }
    )


@api.route("/api/admin/action", methods=["POST"])
def admin_action():
    body = _json_body("Request body must be valid JSON.")
    token, action, target = body.get("token"), body.get("action"), body.get("target")
    if not all(isinstance(value, str) and value for value in (token, action, target)):
        raise MalformedInputError("Missing fields", "Provide token, action, and target in the request body.")

    store = get_store()
    if not store.verify_dashboard_token(token):
        security_logger.warning("dashboard_token_rejected action=%s", sanitize_log_value(action))
        raise AuthError("Invalid or expired token", "Generate a new dashboard link.")

    if action == "revoke_key":
        record = store.revoke_api_key(target)
        return jsonify({"ok": True, "action": action, "target": target, "name": record.name})

    if action == "delete_bucket":
        bucket = store.get_bucket(target, include_expired=True)
        if bucket is None:
            raise NotFoundError("Bucket not found", f"No bucket with id '{target}' exists.")
        store.delete_bucket(target)
        return jsonify({"ok": True, "action": action, "target": target, "name": bucket.name})

    raise MalformedInputError("Invalid action", "Action must be 'revoke_key' or 'delete_bucket'.")


@api.route("/raw/<bucket_id>/<path:file_path>")
@limiter.limit(download_rate_limit_string)
def raw_file(bucket_id: str, file_path: str):
    result = get_store().download_raw(bucket_id, file_path, request.headers.get("Range"))
    return _delivery_response(result)


@api.route("/s/<short_id>")
@limiter.limit(download_rate_limit_string)
def short_link(short_id: str):
    record = get_store().resolve_short_id(short_id)
    return redirect(f"/raw/{record.bucket_id}/{encode_path(record.path)}", code=307)


# Application hooks


def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = sanitize_log_value(request.headers.get("X-Request-ID", "")) or uuid.uuid4().hex


def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length if response.content_length is not None else "stream",
    )
    return response


def add_response_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


def handle_store_error(error: BucketStoreError):
    if isinstance(error, IntegrityFault):
        lifecycle_logger.error("integrity_fault path=%s", sanitize_log_value(request.path))
    elif error.status >= 500:
        lifecycle_logger.error("request_failed error=%s", sanitize_log_value(error.message))
    return jsonify(error.to_payload()), error.status


def handle_http_error(error: HTTPException):
    if error.code == 413:
        payload = {"error": "File too large", "hint": "The upload exceeds the allowed size limit."}
    elif error.code == 429:
        payload = {"error": "Rate limit exceeded", "hint": str(getattr(error, "description", ""))}
    else:
        payload = {"error": error.name, "hint": error.description or ""}
    return jsonify(payload), error.code


def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception("unhandled_error path=%s", sanitize_log_value(request.path))
    return jsonify({"error": "Internal server error", "hint": "The request could not be completed."}), 500


def create_app(overrides: Optional[Mapping[str, Any]] = None, clock: Optional[Callable[[], float]] = None) -> Flask:
    """Build the application and its store.

    *overrides* wins over the environment and ``config.json``; tests use it to point the
    store at a temporary directory and to turn off the sweeper and rate limits.
    """

    settings = build_settings(overrides)
    configure_logging(
        settings.get("LOG_LEVEL", "INFO"),
        settings["LOGS_DIR"] if settings.get("LOG_FILE_ENABLED", True) else None,
    )

    app = Flask(__name__)
    app.config.update(settings)
    app.config["MAX_CONTENT_LENGTH"] = int(float(settings["max_upload_size_mb"]) * BYTES_PER_MB)
    app.config.setdefault("RATELIMIT_STORAGE_URI", os.environ.get("BUCKETSTORE_RATE_LIMIT_STORAGE", "memory://"))

    store = BucketStore(settings, clock=clock or time.time)
    app.extensions[EXTENSION_KEY] = store

    limiter.init_app(app)
    app.register_blueprint(api)

    app.before_request(add_request_id)
    app.after_request(log_request_completion)
    app.after_request(add_response_headers)
    app.register_error_handler(BucketStoreError, handle_store_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    if settings.get("SWEEPER_ENABLED", True):
        store.start()
        atexit.register(store.close)

    lifecycle_logger.info(
        "app_created content_dir=%s db=%s sweeper=%s",
        settings["CONTENT_DIR"],
        settings["DB_PATH"],
        store.sweeper.running,
    )
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
