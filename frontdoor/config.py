from os import getenv
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ERROR_PAGE_STATUSES = frozenset({500, 502, 503, 504})


class RateLimit(BaseModel):
    """Token bucket for one route (Nginx ``limit_req`` zone per location)."""
    model_config = ConfigDict(frozen=True)

    capacity: int = Field(gt=0)
    rate: float = Field(gt=0)   # tokens per second


class RouteRule(BaseModel):
    """
    One `location` entry: a path prefix and what to do with matching requests.

    ``kind="static"`` serves files below ``root``; ``kind="proxy"`` forwards to
    ``upstream``.
    """
    model_config = ConfigDict(frozen=True)

    prefix: str
    kind: Literal["static", "proxy"]
    root: Path | None = None
    upstream: str | None = None
    strip_prefix: bool = False
    rate_limit: RateLimit | None = None

    # static only
    index: str = "index.html"
    spa_fallback: bool = False

    # proxy only; plain HTTP requests only. WebSocket upgrades always carry the
    # upstream's own authority as Host, set by the websocket client handshake.
    host_header: str | None = None

    @field_validator("prefix")
    @classmethod
    def _prefix_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"route prefix must start with '/': {value!r}")
        return value

    @field_validator("upstream")
    @classmethod
    def _upstream_has_scheme(cls, value: str | None) -> str | None:
        # host:port is accepted as shorthand for http://host:port
        if value is None:
            return None
        if "://" not in value:
            value = "http://" + value
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"unsupported upstream scheme: {value!r}")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _action_matches_kind(self) -> "RouteRule":
        if self.kind == "static" and (self.root is None or self.upstream is not None):
            raise ValueError(f"static route {self.prefix!r} needs 'root' and no 'upstream'")
        if self.kind == "proxy" and (self.upstream is None or self.root is not None):
            raise ValueError(f"proxy route {self.prefix!r} needs 'upstream' and no 'root'")
        return self


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = "INFO"

    routes: tuple[RouteRule, ...]
    error_pages: dict[int, Path] = Field(default_factory=dict)

    upstream_timeout: float = 20.0
    connect_timeout: float = 5.0
    max_connections: int = 100

    redis_url: str = "redis://localhost:6379"

    @property
    def rate_limited(self) -> bool:
        return any(rule.rate_limit is not None for rule in self.routes)

    @field_validator("error_pages")
    @classmethod
    def _error_page_statuses(cls, value: dict[int, Path]) -> dict[int, Path]:
        unknown = set(value) - ERROR_PAGE_STATUSES
        if unknown:
            raise ValueError(f"error pages can only be mapped for {sorted(ERROR_PAGE_STATUSES)}, "
                             f"got {sorted(unknown)}")
        return value

    @model_validator(mode="after")
    def _exactly_one_fallback(self) -> "Settings":
        fallbacks = [rule for rule in self.routes if rule.prefix == "/"]
        if len(fallbacks) != 1:
            raise ValueError(f"exactly one fallback route with prefix '/' is required, "
                             f"found {len(fallbacks)}")
        return self


def default_settings() -> Settings:
    return Settings(routes=(RouteRule(prefix="/", kind="static", root=Path("public")),))


def load_settings(path: str | Path | None = None) -> Settings:
    """
    Build the process-wide settings once at startup.

    The JSON file comes from ``path`` or ``FRONTDOOR_CONFIG``; a few keys can be
    overridden from the environment so the same file works in and out of a
    container.
    """
    path = path or getenv("FRONTDOOR_CONFIG")
    if path:
        raw = Path(path).read_text(encoding="utf-8")
        settings = Settings.model_validate_json(raw)
    else:
        settings = default_settings()

    overrides = {}
    if getenv("FRONTDOOR_HOST"):
        overrides["host"] = getenv("FRONTDOOR_HOST")
    if getenv("FRONTDOOR_PORT"):
        overrides["port"] = getenv("FRONTDOOR_PORT")
    if getenv("FRONTDOOR_LOG_LEVEL"):
        overrides["log_level"] = getenv("FRONTDOOR_LOG_LEVEL")
    if getenv("REDIS_URL"):
        overrides["redis_url"] = getenv("REDIS_URL")

    if overrides:
        settings = Settings.model_validate({**settings.model_dump(), **overrides})
    return settings
