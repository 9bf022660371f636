import json
import logging
import math
import os
import secrets
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


BASE_DIR = Path(__file__).resolve().parent

DEFAULT_BASE_URL = "http://localhost:8000"
BYTES_PER_MB = 1024 * 1024


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("bucketstore.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_CONFIG: Dict[str, Any] = {
    "sweep_interval_minutes": 15.0,
    "max_upload_size_mb": 500.0,
    "upload_rate_limit_per_hour": 100.0,
    "download_rate_limit_per_minute": 120.0,
    "dashboard_token_hours": 24.0,
    "upload_token_hours": 1.0,
    "default_expires_in": "1w",
}

CONFIG_NUMERIC_KEYS = {
    "sweep_interval_minutes",
    "max_upload_size_mb",
    "upload_rate_limit_per_hour",
    "download_rate_limit_per_minute",
    "dashboard_token_hours",
    "upload_token_hours",
}

CONFIG_FRACTIONAL_KEYS = {"dashboard_token_hours", "upload_token_hours"}

CONFIG_STRING_KEYS = {"default_expires_in"}


def _finite_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return float(default)
    return number if math.isfinite(number) else float(default)


def _normalize_config(raw_config: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, Mapping):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _finite_float(raw_config.get(key), config[key])

    # Token lifetimes may be fractional hours; everything else is a whole count.
    for key in CONFIG_NUMERIC_KEYS:
        if key in CONFIG_FRACTIONAL_KEYS:
            if config[key] <= 0:
                config[key] = float(DEFAULT_CONFIG[key])
        elif config[key] < 1:
            config[key] = float(DEFAULT_CONFIG[key])

    for key in CONFIG_STRING_KEYS:
        value = raw_config.get(key)
        if isinstance(value, str) and value.strip():
            config[key] = value.strip()

    return config


def config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def save_config(data_dir: Path, config: Mapping[str, Any]) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    normalized = _normalize_config(config)
    target = config_path(data_dir)

    # Write to temporary file first for atomic update
    temp_path = target.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())
        temp_path.replace(target)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def load_config(data_dir: Path) -> Dict[str, Any]:
    data_dir.mkdir(parents=True, exist_ok=True)
    target = config_path(data_dir)
    if target.exists():
        with target.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(data_dir, raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data_dir, data)
    return data


def load_secret_key(data_dir: Path) -> str:
    """Return ``SECRET_KEY`` or a generated secret persisted under *data_dir*."""

    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = data_dir / ".secret_key"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        try:
            # Exclusive creation so concurrent workers agree on one secret.
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logging.getLogger("bucketstore.config").warning(
                "Secret key file exists but is empty, regenerating"
            )
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as secret_file:
            secret_file.write(generated)
            secret_file.flush()
            os.fsync(secret_file.fileno())
        logging.getLogger("bucketstore.config").warning(
            "Generated new secret key - stored in %s", secret_path
        )
        return generated
    except OSError as error:
        logging.getLogger("bucketstore.config").critical(
            "SECURITY WARNING: Using in-memory secret key. Issued tokens will not survive a restart. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


def build_settings(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Assemble the runtime settings from the environment, ``config.json`` and *overrides*.

    Keys of *overrides* win over everything else, which is how tests point the store
    at a temporary directory without touching the process environment.
    """

    overrides = dict(overrides or {})

    storage_root = Path(overrides.get("STORAGE_ROOT") or _resolve_env_path("BUCKETSTORE_STORAGE_ROOT", BASE_DIR))
    data_dir = Path(overrides.get("DATA_DIR") or _resolve_env_path("BUCKETSTORE_DATA_DIR", storage_root / "data"))
    content_dir = Path(overrides.get("CONTENT_DIR") or _resolve_env_path("BUCKETSTORE_CONTENT_DIR", data_dir / "files"))
    logs_dir = Path(overrides.get("LOGS_DIR") or _resolve_env_path("BUCKETSTORE_LOGS_DIR", storage_root / "logs"))

    settings: Dict[str, Any] = load_config(data_dir)
    if os.environ.get("BUCKETSTORE_SWEEP_INTERVAL_MINUTES"):
        settings["sweep_interval_minutes"] = float(
            _safe_int_env("BUCKETSTORE_SWEEP_INTERVAL_MINUTES", int(DEFAULT_CONFIG["sweep_interval_minutes"]))
        )
    if os.environ.get("MAX_UPLOAD_SIZE_MB"):
        settings["max_upload_size_mb"] = float(
            _safe_int_env("MAX_UPLOAD_SIZE_MB", int(DEFAULT_CONFIG["max_upload_size_mb"]))
        )

    settings.update(
        {
            "STORAGE_ROOT": storage_root,
            "DATA_DIR": data_dir,
            "CONTENT_DIR": content_dir,
            "LOGS_DIR": logs_dir,
            "DB_PATH": data_dir / "db.sqlite",
            "ADMIN_API_KEY": os.environ.get("ADMIN_API_KEY", ""),
            "BASE_URL": os.environ.get("BUCKETSTORE_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
        }
    )
    settings.update(overrides)
    if not settings.get("SECRET_KEY"):
        settings["SECRET_KEY"] = load_secret_key(data_dir)
    return settings
