from __future__ import annotations

from checkpool.domain.errors import SecurityRejection

_IPV4_MAPPED_PREFIX = "::ffff:"
_PREFIX_OCTETS = {"8": 1, "16": 2, "24": 3}


def normalize_address(address: str) -> str:
    value = address.strip()
    if value.lower().startswith(_IPV4_MAPPED_PREFIX):
        return value[len(_IPV4_MAPPED_PREFIX):]
    return value


def client_address(*, forwarded_for: str | None, peer: str | None) -> str:
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return normalize_address(first)
    if peer:
        return normalize_address(peer)
    return "unknown"


def parse_allowlist(raw: str) -> list[str]:
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def matches_entry(address: str, entry: str) -> bool:
    if "/" not in entry:
        return address == normalize_address(entry)
    network, _, bits = entry.partition("/")
    octets = _PREFIX_OCTETS.get(bits.strip())
    if octets is None:
        # Only /8, /16 and /24 ranges are supported.
        return False
    client_parts = address.split(".")
    network_parts = normalize_address(network).split(".")
    if len(client_parts) != 4 or len(network_parts) != 4:
        return False
    return client_parts[:octets] == network_parts[:octets]


def is_allowed(address: str, entries: list[str]) -> bool:
    if not entries:
        return True
    return any(matches_entry(address, entry) for entry in entries)


def enforce_allowlist(address: str, entries: list[str]) -> None:
    if not is_allowed(address, entries):
        raise SecurityRejection(
            "ip not allowed",
            status_code=403,
            error_code="ip_not_allowed",
            title="Forbidden",
        )
