from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RuntimeRole:
    name: str
    default_port: int
    runs_reclaim_loop: bool = False


_ROLES = {
    "api": RuntimeRole(name="api", default_port=8000),
    "worker-reclaim": RuntimeRole(name="worker-reclaim", default_port=8100, runs_reclaim_loop=True),
}

SUPPORTED_ROLES = tuple(_ROLES)


def validate_role(role: str) -> RuntimeRole:
    known = _ROLES.get(role)
    if known is not None:
        return known

    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {', '.join(SUPPORTED_ROLES)}. "
        "Note: migrations are applied externally and are not an app role."
    )
