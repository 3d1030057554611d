import os
import sys
from loguru import logger


def config():
    """
    Configure the global Loguru logger. Keeps this function lightweight so it
    can be imported across the codebase without side-effects.
    """
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(
        sys.stdout,
        level=LOG_LEVEL,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )


def redact_url(url: str) -> str:
    """
    Produce a redacted identifier for logging upstream URLs.

    Only the host survives; path and query are reduced to a short hash.
    """
    try:
        from urllib.parse import urlsplit

        parsed = urlsplit(url)
        host = parsed.netloc
        path = (parsed.path or "/") + "?" + parsed.query
        return f"{host}:{hash(path) & 0xFFFF_FFFF:x}"
    except Exception:
        return "<redacted>"
