"""
DDL for the code graph SQLite database.

Single file, WAL mode, foreign keys on. Source-level tables (files,
definitions, imports, symbols, usages) feed the derived layers (metadata,
relationships, modules, interactions, flows, features). The sync_dirty ledger
records which derived rows are stale.
"""

SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

-- Source files
CREATE TABLE IF NOT EXISTS files (
    file_id       INTEGER PRIMARY KEY AUTOINCREMENT,
    rel_path      TEXT NOT NULL UNIQUE,
    language      TEXT NOT NULL DEFAULT 'python',
    content_hash  TEXT NOT NULL,
    size_bytes    INTEGER NOT NULL DEFAULT 0,
    modified_at   TEXT NOT NULL DEFAULT '',
    indexed_at    TEXT NOT NULL
);

-- Named code entities
CREATE TABLE IF NOT EXISTS definitions (
    definition_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id         INTEGER NOT NULL REFERENCES files,
    name            TEXT NOT NULL,
    kind            TEXT NOT NULL,
    is_exported     INTEGER NOT NULL DEFAULT 0,
    line_start      INTEGER NOT NULL,
    col_start       INTEGER NOT NULL DEFAULT 0,
    line_end        INTEGER NOT NULL,
    col_end         INTEGER NOT NULL DEFAULT 0,
    extends_name    TEXT,
    implements_json TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_definitions_file ON definitions(file_id);
CREATE INDEX IF NOT EXISTS idx_definitions_name ON definitions(name);

-- Outgoing imports of a file
CREATE TABLE IF NOT EXISTS imports (
    import_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id       INTEGER NOT NULL REFERENCES files,
    to_file_id    INTEGER REFERENCES files ON DELETE SET NULL,
    kind          TEXT NOT NULL DEFAULT 'import',
    source        TEXT NOT NULL,
    resolved_path TEXT,
    is_external   INTEGER NOT NULL DEFAULT 0,
    line_no       INTEGER NOT NULL DEFAULT 0,
    col           INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_imports_file ON imports(file_id);
CREATE INDEX IF NOT EXISTS idx_imports_to_file ON imports(to_file_id);
CREATE INDEX IF NOT EXISTS idx_imports_resolved ON imports(resolved_path);

-- Reference occurrences: import-linked (import_id set) or internal (import_id NULL)
CREATE TABLE IF NOT EXISTS symbols (
    symbol_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id       INTEGER NOT NULL REFERENCES files,
    import_id     INTEGER REFERENCES imports,
    definition_id INTEGER REFERENCES definitions,
    name          TEXT NOT NULL,
    local_name    TEXT NOT NULL,
    kind          TEXT NOT NULL DEFAULT 'named'
);

CREATE INDEX IF NOT EXISTS idx_symbols_file ON symbols(file_id);
CREATE INDEX IF NOT EXISTS idx_symbols_import ON symbols(import_id);
CREATE INDEX IF NOT EXISTS idx_symbols_definition ON symbols(definition_id);

CREATE TABLE IF NOT EXISTS usages (
    usage_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol_id           INTEGER NOT NULL REFERENCES symbols,
    line_no             INTEGER NOT NULL,
    col                 INTEGER NOT NULL DEFAULT 0,
    context             TEXT NOT NULL DEFAULT 'reference',
    argument_count      INTEGER,
    is_method_call      INTEGER NOT NULL DEFAULT 0,
    is_constructor_call INTEGER NOT NULL DEFAULT 0,
    receiver_name       TEXT
);

CREATE INDEX IF NOT EXISTS idx_usages_symbol ON usages(symbol_id);

-- Per-definition annotations
CREATE TABLE IF NOT EXISTS definition_metadata (
    definition_id INTEGER NOT NULL REFERENCES definitions,
    key           TEXT NOT NULL,
    value         TEXT NOT NULL,
    PRIMARY KEY (definition_id, key)
);

-- Semantic definition-to-definition edges
CREATE TABLE IF NOT EXISTS relationship_annotations (
    relationship_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    from_definition_id INTEGER NOT NULL REFERENCES definitions,
    to_definition_id   INTEGER NOT NULL REFERENCES definitions,
    relationship_type  TEXT NOT NULL DEFAULT 'uses',
    semantic           TEXT NOT NULL DEFAULT '',
    created_at         TEXT NOT NULL,
    UNIQUE (from_definition_id, to_definition_id)
);

-- Module tree
CREATE TABLE IF NOT EXISTS modules (
    module_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    parent_id   INTEGER REFERENCES modules,
    slug        TEXT NOT NULL,
    full_path   TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    depth       INTEGER NOT NULL DEFAULT 0,
    is_test     INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL
);

-- One module per definition
CREATE TABLE IF NOT EXISTS module_members (
    definition_id INTEGER PRIMARY KEY REFERENCES definitions,
    module_id     INTEGER NOT NULL REFERENCES modules,
    assigned_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_module_members_module ON module_members(module_id);

-- Module-to-module edges
CREATE TABLE IF NOT EXISTS interactions (
    interaction_id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_module_id INTEGER NOT NULL REFERENCES modules,
    to_module_id   INTEGER NOT NULL REFERENCES modules,
    direction      TEXT NOT NULL DEFAULT 'uni',
    weight         INTEGER NOT NULL DEFAULT 1,
    pattern        TEXT,
    symbols_json   TEXT NOT NULL DEFAULT '[]',
    semantic       TEXT,
    source         TEXT NOT NULL DEFAULT 'ast',
    confidence     TEXT,
    created_at     TEXT NOT NULL,
    UNIQUE (from_module_id, to_module_id)
);

CREATE TABLE IF NOT EXISTS flows (
    flow_id               INTEGER PRIMARY KEY AUTOINCREMENT,
    name                  TEXT NOT NULL,
    slug                  TEXT NOT NULL UNIQUE,
    entry_point_module_id INTEGER REFERENCES modules,
    entry_point_id        INTEGER REFERENCES definitions,
    entry_path            TEXT NOT NULL DEFAULT '',
    stakeholder           TEXT NOT NULL DEFAULT 'user',
    description           TEXT NOT NULL DEFAULT '',
    action_type           TEXT,
    target_entity         TEXT,
    tier                  INTEGER NOT NULL DEFAULT 1,
    created_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS flow_steps (
    flow_id        INTEGER NOT NULL REFERENCES flows ON DELETE CASCADE,
    step_order     INTEGER NOT NULL,
    interaction_id INTEGER NOT NULL REFERENCES interactions,
    PRIMARY KEY (flow_id, step_order)
);

CREATE INDEX IF NOT EXISTS idx_flow_steps_interaction ON flow_steps(interaction_id);

CREATE TABLE IF NOT EXISTS flow_definition_steps (
    flow_id            INTEGER NOT NULL REFERENCES flows ON DELETE CASCADE,
    step_order         INTEGER NOT NULL,
    from_definition_id INTEGER NOT NULL REFERENCES definitions,
    to_definition_id   INTEGER NOT NULL REFERENCES definitions,
    PRIMARY KEY (flow_id, step_order)
);

CREATE TABLE IF NOT EXISTS flow_subflow_steps (
    flow_id    INTEGER NOT NULL REFERENCES flows ON DELETE CASCADE,
    step_order INTEGER NOT NULL,
    subflow_id INTEGER NOT NULL REFERENCES flows ON DELETE CASCADE,
    PRIMARY KEY (flow_id, step_order)
);

CREATE TABLE IF NOT EXISTS features (
    feature_id  INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    slug        TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feature_flows (
    feature_id INTEGER NOT NULL REFERENCES features ON DELETE CASCADE,
    flow_id    INTEGER NOT NULL REFERENCES flows ON DELETE CASCADE,
    PRIMARY KEY (feature_id, flow_id)
);

-- Dirty-set ledger: one row per (layer, entity)
CREATE TABLE IF NOT EXISTS sync_dirty (
    layer     TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    reason    TEXT NOT NULL,
    marked_at TEXT NOT NULL,
    PRIMARY KEY (layer, entity_id)
);

-- Schema version and sync bookkeeping
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

INIT_META_SQL = """
INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?);
"""
