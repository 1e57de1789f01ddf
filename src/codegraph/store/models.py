"""
Domain models for the code graph.

Pure dataclasses. Each maps to a SQLite table (or a joined view of one).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class File:
    """A source file in the index."""
    file_id: int = 0
    rel_path: str = ""
    language: str = "python"
    content_hash: str = ""
    size_bytes: int = 0
    modified_at: str = ""
    indexed_at: str = ""


@dataclass
class Definition:
    """A named code entity at a location in one file."""
    definition_id: int = 0
    file_id: int = 0
    name: str = ""
    kind: str = "function"  # function, class, method, variable, const
    is_exported: bool = False
    line_start: int = 0
    col_start: int = 0
    line_end: int = 0
    col_end: int = 0
    extends_name: Optional[str] = None
    implements: list[str] = field(default_factory=list)
    rel_path: str = ""  # joined from files when available


@dataclass
class Import:
    """An outgoing import of a file."""
    import_id: int = 0
    file_id: int = 0
    to_file_id: Optional[int] = None
    kind: str = "import"  # import, from-import, import-all
    source: str = ""
    resolved_path: Optional[str] = None
    is_external: bool = False
    line_no: int = 0
    col: int = 0


@dataclass
class Symbol:
    """A reference to a definition, owned by a file and optionally an import."""
    symbol_id: int = 0
    file_id: int = 0
    import_id: Optional[int] = None  # None for internal same-file symbols
    definition_id: Optional[int] = None
    name: str = ""
    local_name: str = ""
    kind: str = "named"  # named, namespace, import-all, internal


@dataclass
class Usage:
    """One occurrence of a symbol."""
    usage_id: int = 0
    symbol_id: int = 0
    line_no: int = 0
    col: int = 0
    context: str = "reference"  # call, reference
    argument_count: Optional[int] = None
    is_method_call: bool = False
    is_constructor_call: bool = False
    receiver_name: Optional[str] = None


@dataclass
class RelationshipAnnotation:
    relationship_id: int = 0
    from_definition_id: int = 0
    to_definition_id: int = 0
    relationship_type: str = "uses"  # uses, extends, implements
    semantic: str = ""
    created_at: str = ""


@dataclass
class Module:
    """A node of the module tree."""
    module_id: int = 0
    parent_id: Optional[int] = None
    slug: str = ""
    full_path: str = ""
    name: str = ""
    description: str = ""
    depth: int = 0
    is_test: bool = False
    created_at: str = ""


@dataclass
class ModuleWithMembers:
    module_id: int = 0
    full_path: str = ""
    name: str = ""
    is_test: bool = False
    member_ids: list[int] = field(default_factory=list)


@dataclass
class Interaction:
    """Directed module-to-module edge. Unique per module pair."""
    interaction_id: int = 0
    from_module_id: int = 0
    to_module_id: int = 0
    direction: str = "uni"  # uni, bi
    weight: int = 1
    pattern: Optional[str] = None  # utility, business, inheritance, test-internal
    symbols: list[str] = field(default_factory=list)
    semantic: Optional[str] = None
    source: str = "ast"  # ast, ast-import, llm-inferred, contract-matched
    confidence: Optional[str] = None
    created_at: str = ""
    from_module_path: str = ""  # joined from modules when available
    to_module_path: str = ""


@dataclass
class Flow:
    """A persisted flow row."""
    flow_id: int = 0
    name: str = ""
    slug: str = ""
    entry_point_module_id: Optional[int] = None
    entry_point_id: Optional[int] = None
    entry_path: str = ""
    stakeholder: str = "user"
    description: str = ""
    action_type: Optional[str] = None
    target_entity: Optional[str] = None
    tier: int = 1
    created_at: str = ""


@dataclass
class Feature:
    feature_id: int = 0
    name: str = ""
    slug: str = ""
    description: str = ""
    created_at: str = ""


@dataclass
class DirtyEntry:
    """One stale entity in one derived layer."""
    layer: str = ""
    entity_id: int = 0
    reason: str = ""
    marked_at: str = ""


@dataclass
class IndexStats:
    """Summary statistics for the index."""
    total_files: int = 0
    total_definitions: int = 0
    total_imports: int = 0
    total_symbols: int = 0
    total_usages: int = 0
    total_modules: int = 0
    total_interactions: int = 0
    total_flows: int = 0
    total_features: int = 0
    indexed_at: Optional[str] = None
