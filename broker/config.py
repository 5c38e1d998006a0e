#  Generation Broker - Configuration
#
#  Loads config.json and provides typed access to all settings.
#  Dot-notation path lookup: cfg("execution.poll_interval_sec")
#  Secrets (JWT, vendor API key, OSS credentials) may come from the environment.
#
#  Depends on: config.json
#  Used by:    all broker modules

import json
import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.json"
DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = DATA_DIR / "broker.db"

# ---------------------------------------------------------------------------
# Load config
# ---------------------------------------------------------------------------

_config: dict = {}


def _load_config(path: Path | None = None):
    """Load configuration from JSON file (internal, called once at import time).

    Module-level constants below are snapshots from _config.
    Do not call this function after import; constants won't update.
    """
    global _config
    config_path = path or CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. "
            "Copy config.example.json to config.json."
        )
    with open(config_path) as f:
        _config = json.load(f)


# Auto-load if config exists at import time
if CONFIG_PATH.exists():
    _load_config()


def cfg(path: str, default=None):
    """Get a config value by dot-notation path.

    Example: cfg("execution.max_retries") -> 3
    """
    keys = path.split(".")
    val = _config
    for key in keys:
        if isinstance(val, dict) and key in val:
            val = val[key]
        else:
            return default
    return val


# ---------------------------------------------------------------------------
# Convenience constants
# ---------------------------------------------------------------------------

HOST = cfg("server.host", "0.0.0.0")
PORT = cfg("server.port", 5300)
CORS_ORIGINS = cfg("server.cors_origins", [
    "http://localhost:5173",
    f"http://localhost:{PORT}",
    "http://127.0.0.1:5173",
    f"http://127.0.0.1:{PORT}",
])

# Redis (queue + cache)
REDIS_URL = os.environ.get("REDIS_URL", cfg("redis.url", "redis://localhost:6379/0"))
QUEUE_KEY = cfg("redis.queue_key", "task_queue")

# Cache TTLs (seconds)
CACHE_USER_TTL = cfg("cache.user_ttl_sec", 3600)
CACHE_MODEL_PARAMS_TTL = cfg("cache.model_params_ttl_sec", 3600)

# Execution
AUTO_AUDIT = cfg("execution.auto_audit", False)
MAX_CONCURRENT_TASKS = cfg("execution.max_concurrent_tasks", 4)
DEFAULT_MAX_RETRIES = cfg("execution.max_retries", 3)
QUEUE_POP_TIMEOUT = cfg("execution.queue_pop_timeout_sec", 5)
SHUTDOWN_GRACE_SECONDS = cfg("execution.shutdown_grace_seconds", 30)
SIMULATED_TASK_DELAY = cfg("execution.simulated_task_delay_sec", 2.0)

# Remote executors
JIEKOU_API_KEY = os.environ.get("JIEKOU_API", cfg("executors.jiekou_api_key", ""))
VENDOR_DEFAULT_QUERY_URL = cfg(
    "executors.vendor_default_query_url",
    "https://api.jiekou.ai/v3/async/task-result?task_id=%s",
)
POLL_INTERVAL = cfg("executors.poll_interval_sec", 5.0)
REMOTE_API_TIMEOUT = cfg("executors.remote_api_timeout_sec", 600)
VENDOR_TIMEOUT = cfg("executors.vendor_timeout_sec", 1800)
HTTP_REQUEST_TIMEOUT = cfg("executors.http_request_timeout_sec", 30.0)
HTTP_DOWNLOAD_TIMEOUT = cfg("executors.http_download_timeout_sec", 60.0)

# Polling supervisor
SUPERVISOR_TICK_INTERVAL = cfg("polling.tick_interval_sec", 30)
SUPERVISOR_MAX_RETRIES = cfg("polling.max_retries", 5)

# Object storage
STORAGE_ROOT = PROJECT_ROOT / cfg("storage.root", "data/objects")
STORAGE_PUBLIC_BASE_URL = cfg("storage.public_base_url", f"http://localhost:{PORT}/objects")
OSS_ENDPOINT = os.environ.get("OSS_ENDPOINT", cfg("storage.oss.endpoint", ""))
OSS_BUCKET = os.environ.get("OSS_BUCKET", cfg("storage.oss.bucket", ""))
OSS_REGION = os.environ.get("OSS_REGION", cfg("storage.oss.region", ""))
OSS_ACCESS_KEY_ID = os.environ.get("OSS_ACCESS_KEY_ID", cfg("storage.oss.access_key_id", ""))
OSS_ACCESS_KEY_SECRET = os.environ.get("OSS_ACCESS_KEY_SECRET", cfg("storage.oss.access_key_secret", ""))

# Auth
AUTH_SECRET_KEY = os.environ.get("JWT_SECRET", cfg("auth.secret_key", ""))
AUTH_ALGORITHM = cfg("auth.algorithm", "HS256")
AUTH_ACCESS_TOKEN_EXPIRE_MINUTES = cfg("auth.access_token_expire_minutes", 60)
AUTH_ALLOW_REGISTRATION = cfg("auth.allow_registration", True)

# Ledger hashing falls back to a fixed key when no JWT secret is configured
LEDGER_HASH_FALLBACK_SECRET = "default-secret"


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

def validate_config():
    """Validate critical config values. Call during app startup (not at import time).

    Raises ConfigError for fatal issues, logs warnings for non-fatal ones.
    """
    import logging
    _logger = logging.getLogger("broker.config")

    # Fatal: JWT secret must be non-empty and at least 32 characters
    if not AUTH_SECRET_KEY or len(AUTH_SECRET_KEY) < 32:
        raise ConfigError(
            "FATAL: auth.secret_key (or JWT_SECRET) is missing or too short "
            "(must be at least 32 characters)"
        )

    # Fatal: port must be valid
    if not isinstance(PORT, int) or not (1 <= PORT <= 65535):
        raise ConfigError(f"server.port must be 1-65535, got {PORT}")

    # Fatal: timing values must be positive
    for label, val in [("executors.poll_interval_sec", POLL_INTERVAL),
                       ("executors.remote_api_timeout_sec", REMOTE_API_TIMEOUT),
                       ("executors.vendor_timeout_sec", VENDOR_TIMEOUT),
                       ("executors.http_request_timeout_sec", HTTP_REQUEST_TIMEOUT),
                       ("executors.http_download_timeout_sec", HTTP_DOWNLOAD_TIMEOUT),
                       ("polling.tick_interval_sec", SUPERVISOR_TICK_INTERVAL),
                       ("execution.queue_pop_timeout_sec", QUEUE_POP_TIMEOUT)]:
        if not isinstance(val, (int, float)) or val <= 0:
            raise ConfigError(f"{label} must be > 0, got {val}")

    # Fatal: concurrency and retry budgets
    if not isinstance(MAX_CONCURRENT_TASKS, int) or MAX_CONCURRENT_TASKS < 1:
        raise ConfigError(
            f"execution.max_concurrent_tasks must be >= 1, got {MAX_CONCURRENT_TASKS}"
        )
    for label, val in [("execution.max_retries", DEFAULT_MAX_RETRIES),
                       ("polling.max_retries", SUPERVISOR_MAX_RETRIES)]:
        if not isinstance(val, int) or val < 0:
            raise ConfigError(f"{label} must be >= 0, got {val}")

    # Fatal: OSS credentials are all-or-nothing
    oss_values = {
        "endpoint": OSS_ENDPOINT,
        "bucket": OSS_BUCKET,
        "access_key_id": OSS_ACCESS_KEY_ID,
        "access_key_secret": OSS_ACCESS_KEY_SECRET,
    }
    if any(oss_values.values()) and not all(oss_values.values()):
        missing = sorted(k for k, v in oss_values.items() if not v)
        raise ConfigError(
            f"storage.oss is partially configured; missing: {', '.join(missing)}"
        )

    # Fatal: CORS origins must be valid URLs
    for origin in CORS_ORIGINS:
        if not isinstance(origin, str):
            raise ConfigError(f"CORS origin must be a string, got {type(origin).__name__}")
        if origin == "*":
            _logger.warning("CORS origin '*' allows all origins; not recommended for production")
        elif not origin.startswith(("http://", "https://")):
            raise ConfigError(
                f"CORS origin must start with http:// or https://, got '{origin}'"
            )

    # Warning: vendor key not set (remote_api targets may not need it)
    if not JIEKOU_API_KEY:
        _logger.warning(
            "JIEKOU_API is not set. Vendor API calls will be sent without credentials."
        )

    if AUTO_AUDIT:
        _logger.info("execution.auto_audit is enabled: new tasks skip moderation")


class ConfigError(Exception):
    """Raised when critical configuration is invalid."""
