# hitcounter/archive.py
"""
Export finished buckets to JSON files, optionally moving them out of the store.

Sink format (one file per hit type):

    {
      "type": 1,
      "type_name": "daily",
      "from_time": 1700006400,
      "to_time": 1700092799,
      "exported_at": 1700100000,
      "columns": ["id", "url", "type", ...],     # physical column names
      "rows": [{"id": 1, "url": "index", ...}, ...]
    }
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Union

from hitcounter.buckets import ALL_TYPES, HitType, selected_types, type_name
from hitcounter.schema import HITS
from hitcounter.store import Where

log = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class _SinkWriteFailed(Exception):
    pass


def _write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def load_export(path: PathLike) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def export_path_for(path: PathLike, kind: int) -> Path:
    """reports/hits.json + weekly -> reports/hits-weekly.json"""
    p = Path(path)
    suffix = p.suffix or ".json"
    return p.with_name(f"{p.stem}-{type_name(kind)}{suffix}")


class HitArchiver:
    def __init__(self, store, calendar):
        self.store = store
        self.calendar = calendar

    def export(self, path: PathLike, kind: int, delete_after: bool = False) -> bool:
        """
        Write the previous completed window of `kind` (yesterday, last week,
        ...) to `path`. Returns False when the file cannot be written; the
        rows are then kept. A failing delete raises StoreError.
        """
        kind = HitType(kind)
        window = self.calendar.previous(kind)
        table = self.store.schema.hits
        flt = (
            Where()
            .ge("from_time", window.start)
            .le("from_time", window.end)
            .eq("type", int(kind))
        )

        try:
            with self.store.atomic():
                rows = self.store.select(HITS, flt)
                if delete_after:
                    deleted = self.store.delete(HITS, flt)
                    log.info("removing %s %s hit rows from the store", deleted, type_name(kind))
                payload = {
                    "type": int(kind),
                    "type_name": type_name(kind),
                    "from_time": window.start,
                    "to_time": window.end,
                    "exported_at": self.calendar.timestamp(),
                    "columns": list(table.columns.values()),
                    "rows": rows,
                }
                try:
                    _write_json(Path(path), payload)
                except (OSError, TypeError, ValueError) as e:
                    # leaving the block with an exception rolls the delete back
                    raise _SinkWriteFailed(str(e)) from e
        except _SinkWriteFailed as e:
            log.exception("export of %s hits to %s failed: %s", type_name(kind), path, e)
            return False

        log.info("exported %s %s hit rows to %s", len(rows), type_name(kind), path)
        return True

    def export_many(self, path: PathLike, types: int = ALL_TYPES, delete_after: bool = False) -> bool:
        """One file per selected type, named <stem>-<type><suffix>."""
        kinds = list(selected_types(types))
        if not kinds:
            return False
        status = True
        for kind in kinds:
            status = self.export(export_path_for(path, kind), kind, delete_after) and status
        return status
