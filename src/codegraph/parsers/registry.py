"""
Parser registry: pick a parser from the file extension.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .base import LanguageParser
from .python import PythonParser

_PARSERS: list[LanguageParser] = [
    PythonParser(),
]

_EXT_MAP: dict[str, LanguageParser] = {}
for p in _PARSERS:
    for ext in p.extensions:
        _EXT_MAP[ext] = p


def get_parser(path: str | Path) -> Optional[LanguageParser]:
    """Return the parser for a file, or None if unsupported."""
    return _EXT_MAP.get(Path(path).suffix.lower())


def supported_extensions() -> set[str]:
    return set(_EXT_MAP.keys())
