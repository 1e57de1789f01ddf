"""
Base parser types and abstract interface.

All language parsers produce the same ``ParsedFile`` shape: definitions,
outgoing file references (imports with their symbols and usages) and
same-file usages of the file's own definitions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional


@dataclass
class ParsedDefinition:
    name: str
    kind: str  # function, class, method, const, variable
    is_exported: bool = False
    line_start: int = 0
    col_start: int = 0
    line_end: int = 0
    col_end: int = 0
    extends_name: Optional[str] = None
    implements: list[str] = field(default_factory=list)


@dataclass
class SymbolUsage:
    """One occurrence of a symbol in the file."""
    line: int
    col: int
    context: str = "reference"  # call, reference
    argument_count: Optional[int] = None
    is_method_call: bool = False
    is_constructor_call: bool = False
    receiver_name: Optional[str] = None


@dataclass
class ImportedSymbol:
    name: str
    local_name: str
    kind: str = "named"  # named, namespace, import-all
    usages: list[SymbolUsage] = field(default_factory=list)


@dataclass
class FileReference:
    """An outgoing import statement, resolved against the known file set."""
    type: str  # import, from-import, import-all
    source: str
    resolved_path: Optional[str] = None
    is_external: bool = False
    imports: list[ImportedSymbol] = field(default_factory=list)
    line: int = 0
    col: int = 0


@dataclass
class InternalUsage:
    """Uses of one of the file's own definitions inside the same file."""
    definition_name: str
    usages: list[SymbolUsage] = field(default_factory=list)


@dataclass
class ParsedFile:
    """Output of parsing a single file."""
    language: str
    definitions: list[ParsedDefinition] = field(default_factory=list)
    references: list[FileReference] = field(default_factory=list)
    internal_usages: list[InternalUsage] = field(default_factory=list)


class LanguageParser(ABC):
    """Abstract base for language-specific parsers."""

    @property
    @abstractmethod
    def language(self) -> str:
        """Language identifier (e.g. 'python')."""

    @property
    @abstractmethod
    def extensions(self) -> tuple[str, ...]:
        """File extensions this parser handles (e.g. ('.py',))."""

    @abstractmethod
    def parse(self, content: str, file_path: str, known_file_paths: Iterable[str] = ()) -> ParsedFile:
        """Parse source code. Raises ParseError on syntax the parser cannot handle."""
