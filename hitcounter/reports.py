# hitcounter/reports.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from hitcounter.buckets import ALL_TYPES, selected_types
from hitcounter.schema import HITS
from hitcounter.store import Sum, Where


@dataclass(frozen=True)
class HitTotals:
    view_count: int = 0
    unique_view_count: int = 0

    def as_dict(self) -> dict:
        return {"view_count": self.view_count, "unique_view_count": self.unique_view_count}


class ReportAggregator:
    def __init__(self, store):
        self.store = store

    def aggregate(
        self,
        url: Optional[str] = None,
        from_time: Optional[int] = None,
        to_time: Optional[int] = None,
        types: Optional[int] = ALL_TYPES,
        where: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> HitTotals:
        """
        Sum view/unique counters of every hit row matching all supplied filters.
        Rows match a range when they lie entirely inside it
        (from_time >= from and to_time <= to). `where` is a free predicate in
        physical column names with its own named `params`.
        """
        flt = Where()
        if url:
            flt.eq("url", url)
        if from_time is not None:
            flt.ge("from_time", int(from_time))
        if to_time is not None:
            flt.le("to_time", int(to_time))
        if types:
            flt.isin("type", [int(kind) for kind in selected_types(types)])
        if where:
            flt.raw(where, params)

        rows = self.store.select(HITS, flt, [Sum("view_count"), Sum("unique_view_count")])
        if not rows:
            return HitTotals()
        row = rows[0]
        return HitTotals(
            view_count=int(row.get("view_count") or 0),
            unique_view_count=int(row.get("unique_view_count") or 0),
        )

    def free_report(self, url: Optional[str], where: str, params: Optional[Mapping[str, Any]] = None) -> HitTotals:
        return self.aggregate(url=url, types=None, where=where, params=params)
