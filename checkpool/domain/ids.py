from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")

ITEM_PREFIX = "itm_"
SESSION_PREFIX = "ses_"


def _prefixed(prefix: str) -> str:
    return prefix + ulid_module.new().str


def new_item_id() -> str:
    return _prefixed(ITEM_PREFIX)


def new_session_id() -> str:
    return _prefixed(SESSION_PREFIX)
