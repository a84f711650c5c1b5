"""Configuration models and helpers for the topic mirror."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping
from urllib.parse import quote

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "DEFAULT_API_BASE",
    "DEFAULT_DATA_ROOT",
    "ENV_VARS",
    "Endpoints",
    "SyncConfig",
]

DEFAULT_API_BASE = "https://www.v2ex.com/api"
DEFAULT_DATA_ROOT = Path("data")

#: Environment variable consulted for each :class:`SyncConfig` field.
ENV_VARS: Dict[str, str] = {
    "base_url": "MIRROR_API_BASE",
    "data_root": "MIRROR_DATA_DIR",
    "interval_ms": "FETCH_INTERVAL_MS",
    "retries": "FETCH_RETRIES",
    "concurrency": "FETCH_CONCURRENCY",
    "refresh_ttl_hours": "TOPIC_REFRESH_TTL_HOURS",
    "hot_pool_limit": "HOT_POOL_LIMIT",
    "hot_pool_ttl_days": "HOT_POOL_TTL_DAYS",
    "node_limit": "BACKFILL_NODE_LIMIT",
    "pages_per_node": "BACKFILL_PAGES_PER_NODE",
    "max_topics": "BACKFILL_MAX_TOPICS",
    "force_refresh": "BACKFILL_FORCE_REFRESH",
    "api_token": "MIRROR_API_TOKEN",
    "comments_page_size": "COMMENTS_PAGE_SIZE",
    "comments_max_pages": "COMMENTS_MAX_PAGES",
    "request_timeout": "FETCH_TIMEOUT_SECONDS",
}


class SyncConfig(BaseModel):
    """Settings for one mirror run, normally read from the environment."""

    base_url: str = Field(default=DEFAULT_API_BASE, description="Root of the remote API")
    data_root: Path = Field(default=DEFAULT_DATA_ROOT, description="Directory holding mirrored documents")
    interval_ms: int = Field(default=350, ge=0, description="Minimum spacing between two requests")
    retries: int = Field(default=3, ge=1, description="Attempts per request before giving up")
    concurrency: int = Field(
        default=2,
        ge=1,
        description=(
            "Number of item workers. Workers share a single rate-limit gate, so this "
            "never raises the outbound request rate."
        ),
    )
    refresh_ttl_hours: float = Field(default=24, ge=0, description="Age after which an item is refetched")
    hot_pool_limit: int = Field(default=200, description="Maximum number of hot pool entries")
    hot_pool_ttl_days: float = Field(default=7, ge=0, description="Hot pool retention window")
    node_limit: int = Field(default=40, ge=0, description="Nodes scanned by a backfill run")
    pages_per_node: int = Field(default=3, ge=1, description="List pages fetched per node during backfill")
    max_topics: int = Field(default=2000, ge=1, description="Distinct item cap for a backfill run")
    force_refresh: bool = Field(default=False, description="Backfill refetches items that already exist")
    api_token: str | None = Field(
        default=None,
        description="Bearer token for the paginated comments endpoint; basic endpoint when omitted",
    )
    comments_page_size: int = Field(default=20, ge=1, description="Page size of the paginated comments endpoint")
    comments_max_pages: int = Field(default=50, ge=1, description="Upper bound on paginated comment pages")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("api_token", mode="before")
    @classmethod
    def _blank_token_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("force_refresh", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SyncConfig":
        """Build a configuration from environment variables (see :data:`ENV_VARS`)."""

        env = os.environ if environ is None else environ
        data = {
            field_name: env[var]
            for field_name, var in ENV_VARS.items()
            if var in env and env[var] != ""
        }
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Mirror configuration is invalid:\n{exc}") from exc

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def elevated_comments(self) -> bool:
        """Return ``True`` when the paginated, token-authorised endpoint can be used."""

        return self.api_token is not None

    def endpoints(self) -> "Endpoints":
        return Endpoints(self.base_url)

    def report_view(self) -> Dict[str, Any]:
        """Return the settings as recorded in run reports, with secrets masked."""

        view = self.model_dump(mode="json", exclude={"api_token"})
        view["api_token"] = "***" if self.api_token else None
        return view


class Endpoints:
    """URLs of the remote API, derived from a single base URL."""

    def __init__(self, base_url: str = DEFAULT_API_BASE) -> None:
        self.base_url = base_url.rstrip("/")

    @property
    def latest(self) -> str:
        return f"{self.base_url}/topics/latest.json"

    @property
    def hot(self) -> str:
        return f"{self.base_url}/topics/hot.json"

    @property
    def nodes(self) -> str:
        return f"{self.base_url}/nodes/all.json"

    def item(self, item_id: int) -> str:
        return f"{self.base_url}/topics/show.json?id={item_id}"

    def comments(self, item_id: int) -> str:
        return f"{self.base_url}/replies/show.json?topic_id={item_id}"

    def node_items(self, node_name: str, page: int) -> str:
        return f"{self.base_url}/topics/show.json?node_name={quote(node_name, safe='')}&p={page}"

    def comments_paged(self, item_id: int, page: int | None = None) -> str:
        url = f"{self.base_url}/v2/topics/{item_id}/replies"
        if page is None:
            return url
        return f"{url}?p={page}"
