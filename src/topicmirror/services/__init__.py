"""Service layer entry points for the topic mirror."""

from __future__ import annotations

from .client import RateLimitedClient  # noqa: F401
from .collector import PaginatedCollector  # noqa: F401
from .hot_pool import HotPoolCache  # noqa: F401
from .refresh import RefreshPolicy  # noqa: F401
from .sync import SyncOrchestrator  # noqa: F401

__all__ = ["HotPoolCache", "PaginatedCollector", "RateLimitedClient", "RefreshPolicy", "SyncOrchestrator"]
