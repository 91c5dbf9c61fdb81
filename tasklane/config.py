"""Runtime configuration for the Tasklane service.

Control flags are read from environment variables to allow toggling in
development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


# Serialize reorders per scope (owner + category for todos, owner for
# categories) with an in-process asyncio lock. Turn off with
# ORDERING_SCOPE_LOCKS=0 only when the database serializes writers itself
# (e.g. a single worker against Postgres with SERIALIZABLE isolation).
ORDERING_SCOPE_LOCKS = _trueish(os.getenv('ORDERING_SCOPE_LOCKS', '1'))

# Seconds a SQLite connection waits on a locked database before failing.
try:
    SQLITE_BUSY_TIMEOUT = float(os.getenv('SQLITE_BUSY_TIMEOUT', '30'))
except Exception:
    SQLITE_BUSY_TIMEOUT = 30.0

# When false, activity log writes are skipped entirely.
ACTIVITY_LOG_ENABLED = _trueish(os.getenv('ACTIVITY_LOG_ENABLED', '1'))

# Color assigned to categories created without one.
DEFAULT_CATEGORY_COLOR = os.getenv('DEFAULT_CATEGORY_COLOR', '#6b7280')

# Logging level name for the service loggers.
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Token lifetime for bearer tokens issued by /auth/token.
try:
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', str(60 * 24)))
except Exception:
    ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


# Optional local overrides: define variables in tasklane/local_config.py to
# override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    # No local overrides present; proceed with defaults.
    pass
