from __future__ import annotations

import hashlib


def normalize_content(content: str) -> str:
    return content.strip()


def fingerprint(content: str) -> str:
    """Content key shared by the dedup rule and the result cache."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()
