import os

from dotenv import load_dotenv

from .resilience import RetryPolicy

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///analytics.sqlite3")
# Connection settings sized for a datastore that may be waking from zero.
DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW", "0"))
DB_POOL_TIMEOUT = float(os.environ.get("DB_POOL_TIMEOUT", "30"))

GEOIP_DB_PATH = os.environ.get("GEOIP_DB_PATH", "geoip/GeoLite2-City.mmdb")

ANONYMIZE_IP = _env_bool("ANONYMIZE_IP")
IP_SALT = os.environ.get("ANALYTICS_IP_SALT", "please-change-me-and-keep-secret")

CORS_ALLOW_ORIGINS = os.environ.get("CORS_ALLOW_ORIGINS", "*").split(",")
CORS_ALLOW_ORIGINS = [o.strip() for o in CORS_ALLOW_ORIGINS if o.strip()]

# How long a successful datastore round trip lets health checks skip their own check.
HEALTH_CACHE_SECONDS = float(os.environ.get("HEALTH_CACHE_SECONDS", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PORT = int(os.environ.get("PORT", "3000"))

# -----------------------------------------------------------------------------
# Retry policies
# -----------------------------------------------------------------------------
# Liveness: rides out blips, ~90s worst case before the orchestrator restarts us.
HEALTH_RETRY = RetryPolicy(max_attempts=10, initial_delay=3.0, max_delay=15.0, label="health check")
# Readiness: long enough to absorb a full cold start of the datastore.
READY_RETRY = RetryPolicy(max_attempts=12, initial_delay=5.0, max_delay=15.0, label="readiness check")
TRACK_RETRY = RetryPolicy(max_attempts=8, initial_delay=3.0, max_delay=15.0, label="track visit")
STATS_RETRY = RetryPolicy(max_attempts=8, initial_delay=3.0, max_delay=15.0, label="fetch stats")


def as_flask_config() -> dict:
    return {
        "DATABASE_URL": DATABASE_URL,
        "DB_POOL_SIZE": DB_POOL_SIZE,
        "DB_MAX_OVERFLOW": DB_MAX_OVERFLOW,
        "DB_POOL_TIMEOUT": DB_POOL_TIMEOUT,
        "GEOIP_DB_PATH": GEOIP_DB_PATH,
        "ANONYMIZE_IP": ANONYMIZE_IP,
        "IP_SALT": IP_SALT,
        "CORS_ALLOW_ORIGINS": CORS_ALLOW_ORIGINS,
        "HEALTH_CACHE_SECONDS": HEALTH_CACHE_SECONDS,
        "LOG_LEVEL": LOG_LEVEL,
        "HEALTH_RETRY": HEALTH_RETRY,
        "READY_RETRY": READY_RETRY,
        "TRACK_RETRY": TRACK_RETRY,
        "STATS_RETRY": STATS_RETRY,
    }
