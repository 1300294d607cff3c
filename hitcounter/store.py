# hitcounter/store.py
"""
Generic data store over the configured hit tables.

Callers speak in column *aliases* ("url", "view_count", ...). The store maps
them to physical names through the SchemaMap and quotes every identifier with
the engine dialect, so nothing outside this module builds identifiers into
SQL by hand.
"""
from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from hitcounter.errors import StoreError
from hitcounter.extensions import db

log = logging.getLogger(__name__)

_TIMEOUT_MARKERS = re.compile(
    r"database is locked|timeout|timed out|lock wait|canceling statement", re.I
)
_DEPTH_KEY = "hitcounter.atomic_depth"


def translate_error(exc: SQLAlchemyError) -> StoreError:
    message = str(getattr(exc, "orig", None) or exc)
    if isinstance(exc, IntegrityError):
        return StoreError(StoreError.CONSTRAINT, message)
    if isinstance(exc, sa.exc.TimeoutError) or _TIMEOUT_MARKERS.search(message):
        return StoreError(StoreError.TIMEOUT, message)
    return StoreError(StoreError.CONNECTION, message)


def _is_locked(exc: OperationalError) -> bool:
    return "database is locked" in str(exc).lower()


def _merge_params(params: Dict[str, Any], extra: Mapping[str, Any]) -> None:
    # a free predicate must not rebind the generated w_/s_/v_ names
    taken = params.keys() & extra.keys()
    if taken:
        raise ValueError(f"bind parameter name(s) already in use: {', '.join(sorted(taken))}")
    params.update(extra)


class Increment:
    """Assignment value meaning `column = column + by`."""

    def __init__(self, by: int = 1):
        self.by = by

    def __repr__(self):
        return f"Increment({self.by})"


class Sum:
    """Projection item meaning `COALESCE(SUM(column), 0) AS column`."""

    def __init__(self, column: str):
        self.column = column


class Where:
    """Conjunctive filter over column aliases, compiled by the store."""

    def __init__(self):
        self._parts: List[Tuple[str, str, Any]] = []
        self._raw: List[Tuple[str, Dict[str, Any]]] = []

    def _add(self, column: str, op: str, value: Any) -> "Where":
        self._parts.append((column, op, value))
        return self

    def eq(self, column, value):
        return self._add(column, "=", value)

    def ge(self, column, value):
        return self._add(column, ">=", value)

    def le(self, column, value):
        return self._add(column, "<=", value)

    def gt(self, column, value):
        return self._add(column, ">", value)

    def lt(self, column, value):
        return self._add(column, "<", value)

    def isin(self, column, values: Iterable[Any]):
        return self._add(column, "IN", list(values))

    def raw(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> "Where":
        """Free-form predicate; it is the caller's SQL and is wrapped in parentheses."""
        if sql and sql.strip():
            self._raw.append((sql.strip(), dict(params or {})))
        return self

    def __bool__(self):
        return bool(self._parts or self._raw)

    def compile(self, column_of: Callable[[str], str], quote: Callable[[str], str]) -> Tuple[str, Dict[str, Any]]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        for i, (column, op, value) in enumerate(self._parts):
            name = quote(column_of(column))
            if op == "IN":
                keys = []
                for j, item in enumerate(value):
                    key = f"w_{i}_{j}"
                    params[key] = item
                    keys.append(f":{key}")
                clauses.append(f"{name} IN ({', '.join(keys)})" if keys else "1 = 0")
            else:
                key = f"w_{i}"
                params[key] = value
                clauses.append(f"{name} {op} :{key}")
        for sql, extra in self._raw:
            clauses.append(f"({sql})")
            _merge_params(params, extra)
        return " AND ".join(clauses), params


Projection = Sequence[Union[str, Sum]]


class HitStore:
    """
    count / insert / update / delete / select over table aliases.

    Every write outside `atomic()` is committed on its own. SQLite lock
    contention is retried with exponential backoff (0.2s, 0.4s, 0.8s, ...)
    before surfacing as StoreError("timeout").
    """

    def __init__(self, schema, session=None, retries: int = 5, base_delay: float = 0.2):
        self.schema = schema
        self._session = session
        self.retries = max(1, retries)
        self.base_delay = base_delay

    # ---- plumbing -----------------------------------------------------------

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    @property
    def dialect(self):
        return self.session.get_bind().dialect

    def quote(self, name: str) -> str:
        return self.dialect.identifier_preparer.quote(name)

    def _table(self, alias: str):
        return self.schema.table(alias)

    def _depth(self) -> int:
        return self.session.info.get(_DEPTH_KEY, 0)

    def _set_depth(self, value: int) -> None:
        self.session.info[_DEPTH_KEY] = value

    def _where(self, alias: str, where: Optional[Where]) -> Tuple[str, Dict[str, Any]]:
        if not where:
            return "", {}
        sql, params = where.compile(self._table(alias).column, self.quote)
        return f" WHERE {sql}", params

    def _run(self, sql: str, params: Mapping[str, Any], fetch: Callable[[Any], Any], write: bool = True):
        for attempt in range(self.retries):
            outer = self._depth() == 0
            try:
                result = self.session.execute(text(sql), dict(params))
                value = fetch(result)
                if write and outer:
                    self.session.commit()
                return value
            except OperationalError as e:
                if not outer:
                    raise translate_error(e) from e
                self.session.rollback()
                if _is_locked(e) and attempt < self.retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    log.info("store locked, retrying in %.1fs (%s/%s)", delay, attempt + 1, self.retries)
                    time.sleep(delay)
                    continue
                raise translate_error(e) from e
            except SQLAlchemyError as e:
                if outer:
                    self.session.rollback()
                raise translate_error(e) from e

    @contextmanager
    def atomic(self):
        """Run the enclosed store calls in one transaction."""
        depth = self._depth()
        self._set_depth(depth + 1)
        try:
            yield self
        except BaseException:
            self._set_depth(depth)
            if depth == 0:
                self.session.rollback()
            raise
        self._set_depth(depth)
        if depth == 0:
            try:
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                raise translate_error(e) from e

    # ---- CRUD -------------------------------------------------------------

    def count(self, alias: str, where: Optional[Where] = None) -> int:
        clause, params = self._where(alias, where)
        sql = f"SELECT COUNT(*) FROM {self.quote(self._table(alias).table_name)}{clause}"
        return int(self._run(sql, params, lambda r: r.scalar(), write=False) or 0)

    def insert(self, alias: str, fields: Mapping[str, Any]) -> bool:
        table = self._table(alias)
        columns, keys, params = [], [], {}
        for i, (column, value) in enumerate(fields.items()):
            key = f"v_{i}"
            columns.append(self.quote(table.column(column)))
            keys.append(f":{key}")
            params[key] = value
        sql = (
            f"INSERT INTO {self.quote(table.table_name)} ({', '.join(columns)}) "
            f"VALUES ({', '.join(keys)})"
        )
        return self._run(sql, params, lambda r: r.rowcount == 1)

    def update(self, alias: str, where: Optional[Where], assignments: Mapping[str, Any]) -> int:
        table = self._table(alias)
        sets, params = [], {}
        for i, (column, value) in enumerate(assignments.items()):
            key = f"s_{i}"
            name = self.quote(table.column(column))
            if isinstance(value, Increment):
                sets.append(f"{name} = {name} + :{key}")
                params[key] = value.by
            else:
                sets.append(f"{name} = :{key}")
                params[key] = value
        clause, where_params = self._where(alias, where)
        _merge_params(params, where_params)
        sql = f"UPDATE {self.quote(table.table_name)} SET {', '.join(sets)}{clause}"
        return self._run(sql, params, lambda r: r.rowcount)

    def delete(self, alias: str, where: Optional[Where] = None) -> int:
        clause, params = self._where(alias, where)
        sql = f"DELETE FROM {self.quote(self._table(alias).table_name)}{clause}"
        return self._run(sql, params, lambda r: r.rowcount)

    def select(self, alias: str, where: Optional[Where] = None, projection: Optional[Projection] = None) -> List[Dict[str, Any]]:
        table = self._table(alias)
        items = []
        for item in projection or list(table.columns):
            if isinstance(item, Sum):
                name = self.quote(table.column(item.column))
                items.append(f"COALESCE(SUM({name}), 0) AS {self.quote(item.column)}")
            else:
                items.append(self.quote(table.column(item)))
        clause, params = self._where(alias, where)
        sql = f"SELECT {', '.join(items)} FROM {self.quote(table.table_name)}{clause}"
        return self._run(sql, params, lambda r: [dict(row) for row in r.mappings().all()], write=False)

    # ---- schema evolution ---------------------------------------------------

    def _inspector(self):
        return sa.inspect(self.session.connection())

    def table_exists(self, table_name: str) -> bool:
        try:
            return self._inspector().has_table(table_name)
        except SQLAlchemyError as e:
            raise translate_error(e) from e

    def column_names(self, table_name: str) -> set:
        try:
            return {c["name"] for c in self._inspector().get_columns(table_name)}
        except SQLAlchemyError as e:
            raise translate_error(e) from e

    def constraint_exists(self, table_name: str, name: str) -> bool:
        try:
            insp = self._inspector()
            names = {c.get("name") for c in insp.get_unique_constraints(table_name)}
            names.update(ix.get("name") for ix in insp.get_indexes(table_name))
        except SQLAlchemyError as e:
            raise translate_error(e) from e
        return name in names

    def create_table(self, table_name: str, columns: Sequence[Tuple[str, str]]) -> None:
        body = ",\n  ".join(f"{self.quote(name)} {decl}" for name, decl in columns)
        self._run(f"CREATE TABLE IF NOT EXISTS {self.quote(table_name)} (\n  {body}\n)", {}, lambda r: None)

    def add_column(self, table_name: str, column: str, decl: str) -> None:
        self._run(
            f"ALTER TABLE {self.quote(table_name)} ADD COLUMN {self.quote(column)} {decl}",
            {},
            lambda r: None,
        )

    def add_constraint(self, table_name: str, name: str, decl: str) -> None:
        unique = re.match(r"^\s*UNIQUE\s*\((?P<cols>.+)\)\s*$", decl, re.I | re.S)
        if unique and self.dialect.name == "sqlite":
            # SQLite has no ALTER TABLE ... ADD CONSTRAINT
            sql = (
                f"CREATE UNIQUE INDEX {self.quote(name)} "
                f"ON {self.quote(table_name)} ({unique.group('cols')})"
            )
        else:
            sql = f"ALTER TABLE {self.quote(table_name)} ADD CONSTRAINT {self.quote(name)} {decl}"
        self._run(sql, {}, lambda r: None)
