from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping


@dataclass(frozen=True)
class RelaySettings:
    """
    Explicit configuration handed to the relay orchestrators at construction.
    """

    dev_mode: bool = False
    route_prefix: str = "/api/proxy"
    public_base_url: str = ""
    allowed_origins: tuple[str, ...] = ()
    image_max_url_length: int = 4000
    stream_max_url_length: int = 6000
    image_rate_limit: int = 300
    stream_rate_limit: int = 3000
    rate_limit_window_seconds: int = 60
    image_timeout: float = 15.0
    stream_timeout: float = 15.0
    stream_retry_timeout: float = 10.0
    image_cache_max_age: int = 604800
    image_cache_swr: int = 86400
    hotlink_referers: Mapping[str, str] = field(default_factory=dict)

    @property
    def self_routes(self) -> tuple[str, str]:
        prefix = self.route_prefix.rstrip("/")
        return (f"{prefix}/image", f"{prefix}/stream")

    @classmethod
    def from_config(cls) -> "RelaySettings":
        """
        Snapshot the environment-driven values of `mediarelay.config`.
        """
        from mediarelay import config

        return cls(
            dev_mode=config.DEV_MODE,
            route_prefix=config.ROUTE_PREFIX,
            public_base_url=config.PUBLIC_BASE_URL,
            allowed_origins=tuple(config.ALLOWED_ORIGINS),
            image_max_url_length=config.IMAGE_MAX_URL_LENGTH,
            stream_max_url_length=config.STREAM_MAX_URL_LENGTH,
            image_rate_limit=config.IMAGE_RATE_LIMIT,
            stream_rate_limit=config.STREAM_RATE_LIMIT,
            rate_limit_window_seconds=config.RATE_LIMIT_WINDOW_SECONDS,
            image_timeout=config.IMAGE_TIMEOUT_SECONDS,
            stream_timeout=config.STREAM_TIMEOUT_SECONDS,
            stream_retry_timeout=config.STREAM_RETRY_TIMEOUT_SECONDS,
            image_cache_max_age=config.IMAGE_CACHE_MAX_AGE,
            image_cache_swr=config.IMAGE_CACHE_SWR,
            hotlink_referers=dict(config.HOTLINK_REFERERS),
        )
