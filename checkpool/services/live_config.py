from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import os
import time

from checkpool.domain.contracts import ConfigSource

logger = logging.getLogger("runtime")

DEFAULT_SETTINGS: dict[str, object] = {
    "signature_enabled": False,
    "signature_secret": "",
    "ip_allowlist_enabled": False,
    "ip_allowlist": "",
    "rate_limit_enabled": False,
    "rate_limit_max_requests": 100,
    "rate_limit_window_seconds": 60,
    "result_cache_ttl_seconds": 604800,
    "min_items_per_fetch": 1,
    "max_items_per_fetch": 1000,
    "max_items_per_session": 10000,
    "price_per_item": 0,
    "stock_owner_id": "",
    "lease_ttl_seconds": 0,
}

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})


def default_settings_from_env() -> dict[str, object]:
    settings = dict(DEFAULT_SETTINGS)
    stock_owner_id = os.getenv("STOCK_OWNER_ID")
    if stock_owner_id:
        settings["stock_owner_id"] = stock_owner_id
    return settings


@dataclass
class InMemoryConfigSource:
    values: dict[str, object] = field(default_factory=default_settings_from_env)
    loads_total: int = 0

    async def load_all(self) -> dict[str, object]:
        self.loads_total += 1
        return dict(self.values)


@dataclass
class LiveConfig:
    """Periodically refreshed view of operator-editable settings.

    Values missing from the source fall back to default_settings_from_env(). A failing
    refresh keeps the previous snapshot, so security checks keep working on
    the last known configuration.
    """

    source: ConfigSource
    refresh_seconds: float = 30.0
    clock: Callable[[], float] = time.monotonic
    _snapshot: dict[str, object] | None = field(default=None, init=False)
    _loaded_at: float = field(default=0.0, init=False)

    async def refresh(self) -> dict[str, object]:
        try:
            loaded = await self.source.load_all()
        except Exception as exc:
            if self._snapshot is None:
                raise
            logger.warning("live config refresh failed", extra={"reason": str(exc)})
            self._loaded_at = self.clock()
            return self._snapshot
        self._snapshot = {**default_settings_from_env(), **loaded}
        self._loaded_at = self.clock()
        return self._snapshot

    async def snapshot(self) -> dict[str, object]:
        if self._snapshot is None or self.clock() - self._loaded_at >= self.refresh_seconds:
            return await self.refresh()
        return self._snapshot

    async def get(self, key: str, default: object = None) -> object:
        values = await self.snapshot()
        value = values.get(key)
        return default if value is None else value

    async def get_bool(self, key: str, default: bool = False) -> bool:
        value = await self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_VALUES

    async def get_int(self, key: str, default: int = 0) -> int:
        value = await self.get(key)
        if value is None or isinstance(value, bool):
            return default
        try:
            return int(str(value).strip())
        except ValueError:
            return default

    async def get_float(self, key: str, default: float = 0.0) -> float:
        value = await self.get(key)
        if value is None or isinstance(value, bool):
            return default
        try:
            return float(str(value).strip())
        except ValueError:
            return default

    async def get_str(self, key: str, default: str = "") -> str:
        value = await self.get(key)
        if value is None:
            return default
        return str(value)
