# hitcounter/schema.py
"""
Table blueprints for the hit counter.

Configuration shape (keys are fixed, values are yours):

    {
      "blueprints": {
        "hits": {
          "table_name": "hits",
          "columns":     {alias: physical column name, ...},
          "types":       {alias: SQL type declaration, ...},
          "constraints": {name: declaration, ...},
        },
        "unique_hits": {...},
      }
    }

Only the "hits" and "unique_hits" aliases are read; anything else is ignored.
Constraint declarations may reference columns as {alias}; they are replaced
with the quoted physical names.
"""
from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from hitcounter.errors import ConfigError, StoreError

log = logging.getLogger(__name__)

HITS = "hits"
UNIQUE_HITS = "unique_hits"
TABLE_ALIASES = (HITS, UNIQUE_HITS)

REQUIRED_COLUMNS = {
    HITS: ("id", "url", "type", "view_count", "unique_view_count", "from_time", "to_time"),
    UNIQUE_HITS: ("id", "hashed_name", "type", "device", "browser", "platform", "created_at"),
}

# used when a blueprint does not declare the id type itself
ID_TYPES = {
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "postgresql": "BIGSERIAL PRIMARY KEY",
    "mysql": "BIGINT UNSIGNED NOT NULL AUTO_INCREMENT PRIMARY KEY",
    "mariadb": "BIGINT UNSIGNED NOT NULL AUTO_INCREMENT PRIMARY KEY",
}
DEFAULT_ID_TYPE = "INTEGER NOT NULL PRIMARY KEY"

DEFAULT_BLUEPRINTS: Dict[str, Any] = {
    "blueprints": {
        HITS: {
            "table_name": "hits",
            "columns": {
                "id": "id",
                "url": "url",
                "type": "type",
                "view_count": "view_count",
                "unique_view_count": "unique_view_count",
                "from_time": "from_time",
                "to_time": "to_time",
            },
            "types": {
                "url": "TEXT NOT NULL",
                "type": "INTEGER NOT NULL",
                "view_count": "BIGINT NOT NULL DEFAULT 0",
                "unique_view_count": "BIGINT NOT NULL DEFAULT 0",
                "from_time": "BIGINT NOT NULL",
                "to_time": "BIGINT NOT NULL",
            },
            "constraints": {
                "uq_hits_bucket": "UNIQUE ({url}, {type}, {from_time}, {to_time})",
            },
        },
        UNIQUE_HITS: {
            "table_name": "unique_hits",
            "columns": {
                "id": "id",
                "hashed_name": "hashed_name",
                "type": "type",
                "device": "device",
                "browser": "browser",
                "platform": "platform",
                "created_at": "created_at",
            },
            "types": {
                "hashed_name": "VARCHAR(64) NOT NULL",
                "type": "INTEGER NOT NULL",
                "device": "TEXT",
                "browser": "TEXT",
                "platform": "TEXT",
                "created_at": "BIGINT NOT NULL",
            },
            "constraints": {},
        },
    },
}


@dataclass(frozen=True)
class TableBlueprint:
    alias: str
    table_name: str
    columns: Mapping[str, str]
    types: Mapping[str, str]
    constraints: Mapping[str, str]

    def column(self, key: str) -> str:
        try:
            return self.columns[key]
        except KeyError:
            raise ConfigError(f"{self.alias}: unknown column alias {key!r}") from None

    def column_type(self, key: str, dialect_name: str) -> Optional[str]:
        decl = self.types.get(key)
        if not decl and key == "id":
            return ID_TYPES.get(dialect_name, DEFAULT_ID_TYPE)
        return decl or None

    def constraint_sql(self, name: str, quote) -> str:
        decl = self.constraints[name]
        try:
            return decl.format(**{k: quote(v) for k, v in self.columns.items()})
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigError(f"{self.alias}: bad constraint {name!r}: {e}") from e


@dataclass(frozen=True)
class SchemaMap:
    tables: Mapping[str, TableBlueprint]

    def table(self, alias: str) -> TableBlueprint:
        try:
            return self.tables[alias]
        except KeyError:
            raise ConfigError(f"no blueprint configured for {alias!r}") from None

    def has(self, alias: str) -> bool:
        return alias in self.tables

    @property
    def hits(self) -> TableBlueprint:
        return self.table(HITS)

    @property
    def unique_hits(self) -> TableBlueprint:
        return self.table(UNIQUE_HITS)


def deep_merge(base: Mapping, override: Mapping) -> Dict:
    merged = copy.deepcopy(dict(base))
    for key, value in (override or {}).items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _str_map(alias: str, field: str, value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{alias}.{field} must be a mapping")
    out = {}
    for k, v in value.items():
        if v is None:
            continue
        if not isinstance(v, str):
            raise ConfigError(f"{alias}.{field}.{k} must be a string")
        out[str(k)] = v
    return out


def _blueprint(alias: str, structure: Any) -> TableBlueprint:
    if not isinstance(structure, Mapping):
        raise ConfigError(f"blueprint {alias!r} must be a mapping")

    table_name = structure.get("table_name")
    if not isinstance(table_name, str) or not table_name.strip():
        raise ConfigError(f"blueprint {alias!r} has no table_name")

    columns = _str_map(alias, "columns", structure.get("columns"))
    missing = [c for c in REQUIRED_COLUMNS[alias] if not columns.get(c)]
    if missing:
        raise ConfigError(f"blueprint {alias!r} is missing columns: {', '.join(missing)}")

    constraints = structure.get("constraints") or {}
    if isinstance(constraints, (list, tuple)):
        # positional constraints get generated names
        constraints = {f"{table_name}_c{i}": c for i, c in enumerate(constraints)}
    constraints = {k: v for k, v in _str_map(alias, "constraints", constraints).items() if v.strip()}

    return TableBlueprint(
        alias=alias,
        table_name=table_name.strip(),
        columns=MappingProxyType(columns),
        types=MappingProxyType(_str_map(alias, "types", structure.get("types"))),
        constraints=MappingProxyType(constraints),
    )


def load_schema(config: Optional[Mapping] = None, merge: bool = True) -> SchemaMap:
    if config is None:
        source = DEFAULT_BLUEPRINTS
    elif not isinstance(config, Mapping):
        raise ConfigError("schema configuration must be a mapping")
    elif merge:
        source = deep_merge(DEFAULT_BLUEPRINTS, config)
    else:
        source = config

    blueprints = source.get("blueprints") or {}
    if not isinstance(blueprints, Mapping):
        raise ConfigError("'blueprints' must be a mapping")

    tables = {}
    for alias, structure in blueprints.items():
        if alias not in TABLE_ALIASES:
            log.debug("ignoring unknown blueprint alias %r", alias)
            continue
        tables[alias] = _blueprint(alias, structure)

    if HITS not in tables:
        raise ConfigError("no 'hits' blueprint configured")
    return SchemaMap(MappingProxyType(tables))


def load_schema_file(path: str, merge: bool = True) -> SchemaMap:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read schema file {path}: {e}") from e
    return load_schema(data, merge=merge)


# ---- create-if-missing ------------------------------------------------------

CREATED = "created"
EXISTS = "exists"
FAILED = "failed"


@dataclass(frozen=True)
class SchemaOutcome:
    table: str
    item: str
    status: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED


def _attempt(outcomes: List[SchemaOutcome], table: str, item: str, fn) -> Optional[str]:
    try:
        status = fn()
    except (ConfigError, StoreError) as e:
        log.warning("schema %s.%s failed: %s", table, item, e)
        outcomes.append(SchemaOutcome(table, item, FAILED, str(e)))
        return None
    outcomes.append(SchemaOutcome(table, item, status))
    return status


def _ensure_table(store, bp: TableBlueprint, dialect: str, outcomes: List[SchemaOutcome]) -> None:
    typed = [(key, bp.column_type(key, dialect)) for key in bp.columns]
    fresh = set()

    def create():
        if store.table_exists(bp.table_name):
            return EXISTS
        declared = [(bp.columns[key], decl) for key, decl in typed if decl]
        store.create_table(bp.table_name, declared)
        fresh.update(key for key, decl in typed if decl)
        return CREATED

    _attempt(outcomes, bp.table_name, "table", create)

    for key, decl in typed:
        physical = bp.columns[key]

        def column(key=key, decl=decl, physical=physical):
            if key in fresh:
                return CREATED
            if not decl:
                raise ConfigError(f"{bp.alias}: no type declared for column {key!r}")
            if physical in store.column_names(bp.table_name):
                return EXISTS
            store.add_column(bp.table_name, physical, decl)
            return CREATED

        _attempt(outcomes, bp.table_name, f"column:{physical}", column)


def _ensure_constraints(store, bp: TableBlueprint, outcomes: List[SchemaOutcome]) -> None:
    for name in bp.constraints:

        def constraint(name=name):
            if store.constraint_exists(bp.table_name, name):
                return EXISTS
            store.add_constraint(bp.table_name, name, bp.constraint_sql(name, store.quote))
            return CREATED

        _attempt(outcomes, bp.table_name, f"constraint:{name}", constraint)


def ensure_schema(store, schema: Optional[SchemaMap] = None) -> List[SchemaOutcome]:
    """
    Idempotent: create missing tables, columns and constraints.
    Every item is attempted; failures are reported, never raised.
    """
    schema = schema or store.schema
    dialect = store.dialect.name
    outcomes: List[SchemaOutcome] = []

    for bp in schema.tables.values():
        _ensure_table(store, bp, dialect, outcomes)
    # constraints after all tables exist
    for bp in schema.tables.values():
        _ensure_constraints(store, bp, outcomes)

    created = sum(1 for o in outcomes if o.status == CREATED)
    failed = sum(1 for o in outcomes if o.status == FAILED)
    log.info("schema ensured: created=%s failed=%s total=%s", created, failed, len(outcomes))
    return outcomes


def schema_from_config(config: Mapping) -> SchemaMap:
    """SchemaMap from Flask config: HIT_COUNTER_SCHEMA_FILE wins over HIT_COUNTER_BLUEPRINTS."""
    merge = bool(config.get("HIT_COUNTER_MERGE_SCHEMA", True))
    path = config.get("HIT_COUNTER_SCHEMA_FILE")
    if path:
        return load_schema_file(path, merge=merge)
    return load_schema(config.get("HIT_COUNTER_BLUEPRINTS"), merge=merge)
