"""
Multipost Configuration
=======================
Process-wide settings read from the environment.

Plain knobs are module constants with defaults. Secrets are read through the
require_* helpers so a missing value surfaces as ConfigError when the process
starts (validate_env), not in the middle of a job.
"""

import os
import socket
from typing import Tuple

from .errors import ConfigError

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.environ.get("DATABASE_URL", "")
REDIS_URL = os.environ.get("REDIS_URL", "")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

# Queue / worker
PUBLISH_QUEUE_NAME = os.environ.get("PUBLISH_QUEUE_NAME", "publish")


def default_worker_id() -> str:
    """Host and pid; unique per process so processing lists are never shared."""
    return f"{socket.gethostname()}-{os.getpid()}"


WORKER_ID = os.environ.get("WORKER_ID", "").strip() or default_worker_id()
WORKER_CONCURRENCY = int(os.environ.get("WORKER_CONCURRENCY", "1"))
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL_SECONDS", "1.0"))

# Job retry policy handed to the queue at enqueue time
JOB_MAX_ATTEMPTS = int(os.environ.get("JOB_MAX_ATTEMPTS", "3"))
JOB_BACKOFF_DELAY_MS = int(os.environ.get("JOB_BACKOFF_DELAY_MS", "5000"))

# Tokens are stale when they expire within this many seconds
TOKEN_REFRESH_MARGIN_SECONDS = int(os.environ.get("TOKEN_REFRESH_MARGIN_SECONDS", "60"))

# Storage
LOCAL_STORAGE = os.environ.get("LOCAL_STORAGE", "").lower() in ("1", "true", "yes")
LOCAL_STORAGE_DIR = os.environ.get("LOCAL_STORAGE_DIR", "/tmp/uploads")
S3_BUCKET = os.environ.get("S3_BUCKET", "")
S3_ENDPOINT = os.environ.get("S3_ENDPOINT", "")
AWS_REGION = os.environ.get("AWS_REGION", "")


def _flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def require_env(name: str) -> str:
    """Return a required environment value or raise ConfigError."""
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} is required")
    return value


def token_encryption_key_raw() -> str:
    return require_env("TOKEN_ENCRYPTION_KEY")


def oauth_state_secret() -> str:
    return require_env("OAUTH_STATE_SECRET")


def google_oauth_config() -> Tuple[str, str, str]:
    """Return (client_id, client_secret, redirect_uri) for Google OAuth."""
    names = ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GOOGLE_REDIRECT_URI")
    missing = [n for n in names if not os.environ.get(n, "").strip()]
    if missing:
        raise ConfigError(
            "GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, and GOOGLE_REDIRECT_URI are required",
            details={"missing": missing},
        )
    return tuple(os.environ[n].strip() for n in names)  # type: ignore[return-value]


def allow_legacy_plaintext_tokens() -> bool:
    """Opt-in migration path for token columns written before encryption."""
    return _flag("ALLOW_LEGACY_PLAINTEXT_TOKENS")


def validate_env(require_oauth: bool = False) -> None:
    """Fail fast on missing startup configuration."""
    missing = []
    if not os.environ.get("DATABASE_URL", DATABASE_URL):
        missing.append("DATABASE_URL")
    if not os.environ.get("REDIS_URL", REDIS_URL):
        missing.append("REDIS_URL")
    if not os.environ.get("TOKEN_ENCRYPTION_KEY", "").strip():
        missing.append("TOKEN_ENCRYPTION_KEY")
    if require_oauth:
        for name in ("OAUTH_STATE_SECRET", "GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GOOGLE_REDIRECT_URI"):
            if not os.environ.get(name, "").strip():
                missing.append(name)

    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}", details={"missing": missing})


def youtube_configured() -> bool:
    return all(
        os.environ.get(n, "").strip()
        for n in ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GOOGLE_REDIRECT_URI")
    )
