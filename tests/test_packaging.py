"""Tests for pyproject.toml — declared runtime dependencies."""
from __future__ import annotations

import re
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _runtime_dependencies() -> list:
    text = PYPROJECT.read_text(encoding="utf-8")
    block = re.search(r"^dependencies = \[(.*?)^\]", text, re.S | re.M).group(1)
    return [re.split(r"[\[<>=!~ ]", dep, maxsplit=1)[0] for dep in re.findall(r'"([^"]+)"', block)]


def test_runtime_dependencies() -> None:
    assert _runtime_dependencies() == [
        "sqlalchemy", "asyncpg", "pydantic-settings", "reportlab",
    ]


def test_pydantic_comes_only_through_settings() -> None:
    assert "pydantic" not in _runtime_dependencies()
