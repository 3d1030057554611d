import os
from dotenv import load_dotenv
from loguru import logger
from mediarelay.utils.logger import config as configure_logger

# Load .env as early as possible so all downstream imports see the intended env
load_dotenv()

# Configure logger after env is loaded (LOG_LEVEL honored)
configure_logger()


def _as_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    v = val.strip().lower()
    return v in ("1", "true", "yes", "on")


def _as_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}; defaulting to {default}.")
        return default
    return max(minimum, value)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}; defaulting to {default}.")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive; defaulting to {default}.")
        return default
    return value


def _csv(val: str) -> list[str]:
    return list(dict.fromkeys(p.strip() for p in val.split(",") if p.strip()))


# --- Server ---
MEDIARELAY_RELOAD = _as_bool(os.getenv("MEDIARELAY_RELOAD", None), False)
MEDIARELAY_HOST = os.getenv("MEDIARELAY_HOST", "0.0.0.0").strip() or "0.0.0.0"
MEDIARELAY_PORT = _as_int("MEDIARELAY_PORT", 8080, minimum=1)

# LISTEN_ADDR=host:port wins over the split fields when present.
LISTEN_ADDR = os.getenv("LISTEN_ADDR", "").strip()
if LISTEN_ADDR:
    _host, _, _port = LISTEN_ADDR.rpartition(":")
    if _host and _port.isdigit():
        MEDIARELAY_HOST = _host.strip("[]")
        MEDIARELAY_PORT = int(_port)
    else:
        logger.warning(
            f"LISTEN_ADDR must be in the form host:port (got {LISTEN_ADDR!r}); ignoring."
        )
logger.debug(f"MEDIARELAY_HOST={MEDIARELAY_HOST}, MEDIARELAY_PORT={MEDIARELAY_PORT}")

# Development mode: no edge cache, no origin allow-list, no-store responses.
DEV_MODE = _as_bool(os.getenv("DEV_MODE", None), False)
logger.debug(f"DEV_MODE={DEV_MODE}")

# --- Routing ---
# Prefixed mount point of the relay routes; they are also served at the root.
ROUTE_PREFIX = "/" + os.getenv("ROUTE_PREFIX", "/api/proxy").strip().strip("/")
if ROUTE_PREFIX == "/":
    ROUTE_PREFIX = "/api/proxy"
logger.debug(f"ROUTE_PREFIX={ROUTE_PREFIX}")

# Fixed public origin used in rewritten manifests (e.g. https://media.example.com).
# Empty means: derive it from X-Forwarded-Proto/X-Forwarded-Host/Host per request.
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")
logger.debug(f"PUBLIC_BASE_URL={PUBLIC_BASE_URL or '<derived>'}")

# Comma-separated list of browser origins allowed to use the relay.
# Empty or "*" allows every origin; "*.example.com" matches subdomains.
ALLOWED_ORIGINS = _csv(os.getenv("ALLOWED_ORIGINS", ""))
logger.debug(f"ALLOWED_ORIGINS={ALLOWED_ORIGINS or '<any>'}")

# --- Admission ---
IMAGE_MAX_URL_LENGTH = _as_int("IMAGE_MAX_URL_LENGTH", 4000, minimum=1)
STREAM_MAX_URL_LENGTH = _as_int("STREAM_MAX_URL_LENGTH", 6000, minimum=1)

# --- Rate limiting ---
IMAGE_RATE_LIMIT = _as_int("IMAGE_RATE_LIMIT", 300, minimum=1)
# HLS playback issues one request per segment, hence the much higher ceiling.
STREAM_RATE_LIMIT = _as_int("STREAM_RATE_LIMIT", 3000, minimum=1)
RATE_LIMIT_WINDOW_SECONDS = _as_int("RATE_LIMIT_WINDOW_SECONDS", 60, minimum=1)
logger.debug(
    f"IMAGE_RATE_LIMIT={IMAGE_RATE_LIMIT}, STREAM_RATE_LIMIT={STREAM_RATE_LIMIT}, "
    f"RATE_LIMIT_WINDOW_SECONDS={RATE_LIMIT_WINDOW_SECONDS}"
)

# --- Upstream timeouts (seconds) ---
IMAGE_TIMEOUT_SECONDS = _as_float("IMAGE_TIMEOUT_SECONDS", 15.0)
STREAM_TIMEOUT_SECONDS = _as_float("STREAM_TIMEOUT_SECONDS", 15.0)
STREAM_RETRY_TIMEOUT_SECONDS = _as_float("STREAM_RETRY_TIMEOUT_SECONDS", 10.0)
logger.debug(
    f"IMAGE_TIMEOUT_SECONDS={IMAGE_TIMEOUT_SECONDS}, STREAM_TIMEOUT_SECONDS={STREAM_TIMEOUT_SECONDS}, "
    f"STREAM_RETRY_TIMEOUT_SECONDS={STREAM_RETRY_TIMEOUT_SECONDS}"
)

# --- Image caching ---
IMAGE_CACHE_MAX_AGE = _as_int("IMAGE_CACHE_MAX_AGE", 604800)
IMAGE_CACHE_SWR = _as_int("IMAGE_CACHE_SWR", 86400)
EDGE_CACHE_MAX_ENTRIES = _as_int("EDGE_CACHE_MAX_ENTRIES", 512, minimum=1)
logger.debug(
    f"IMAGE_CACHE_MAX_AGE={IMAGE_CACHE_MAX_AGE}, IMAGE_CACHE_SWR={IMAGE_CACHE_SWR}, "
    f"EDGE_CACHE_MAX_ENTRIES={EDGE_CACHE_MAX_ENTRIES}"
)

# --- Hotlink referers ---
# Comma-separated "needle=referer" pairs; when the image host contains the
# needle, the referer is sent upstream.
_raw_referers = os.getenv("HOTLINK_REFERERS", "douban=https://movie.douban.com/")
HOTLINK_REFERERS: dict[str, str] = {}
for _pair in _csv(_raw_referers):
    _needle, sep, _referer = _pair.partition("=")
    if not sep or not _needle.strip() or not _referer.strip():
        logger.warning(f"Ignoring malformed HOTLINK_REFERERS entry: {_pair!r}")
        continue
    HOTLINK_REFERERS[_needle.strip().lower()] = _referer.strip()
logger.debug(f"HOTLINK_REFERERS={HOTLINK_REFERERS}")
