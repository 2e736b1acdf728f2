from __future__ import annotations

from dataclasses import dataclass

from checkpool.domain.contracts import ResultCache, WorkRepository
from checkpool.security.gateway import SecurityGateway
from checkpool.services.live_config import LiveConfig


@dataclass(frozen=True)
class ApiDeps:
    repository: WorkRepository
    cache: ResultCache
    config: LiveConfig
    gateway: SecurityGateway
