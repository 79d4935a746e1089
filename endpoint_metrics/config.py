import os

def int_env(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    """
    Read an env var and convert to int, with optional range validation.
    Falls back to `default` if var is unset or its parsing fails.
    """
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except (ValueError, TypeError):
        value = int(default)

    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value
    return value

def str_env(name: str, default: str | None = None) -> str | None:
    """Like os.getenv, but treats an empty value as unset."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()

# Persistence
STORAGE_PATH  = str_env("METRICS_STORAGE_PATH", "endpoint_metrics.json")
STORAGE_KEY   = str_env("METRICS_STORAGE_KEY", "retry_endpoint_metrics_v1")

# Aggregation
MAX_SAMPLES    = int_env("METRICS_MAX_SAMPLES", 2000, min_value=1)     # per-endpoint sample buffer
AUTOSAVE_EVERY = int_env("METRICS_AUTOSAVE_EVERY", 10, min_value=1)    # save on every Nth call per endpoint
BASE_URL       = str_env("METRICS_BASE_URL")                           # base for relative request ids

# Chart export
EXPORT_DIR = str_env("METRICS_EXPORT_DIR", "exports")

# Client recorder
REQUEST_TIMEOUT_MS = int_env("REQUEST_TIMEOUT_MS", 2000, min_value=1)

# Server bind & logging
BIND_HOST = os.getenv("BIND_HOST", "0.0.0.0")
PORT      = int_env("PORT", 8080, min_value=1, max_value=65535)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
