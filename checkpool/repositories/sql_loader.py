from __future__ import annotations

from pathlib import Path


SQL_DIR = Path(__file__).with_name("sql")


def load_sql(name: str, **placeholders: str) -> str:
    """Read a statement from sql/ and fill `{column_list}` style placeholders."""
    text = (SQL_DIR / name).read_text(encoding="utf-8").strip()
    if not placeholders:
        return text
    return text.format(**placeholders)
