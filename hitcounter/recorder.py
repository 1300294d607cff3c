# hitcounter/recorder.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from hashlib import sha256
from typing import Mapping, Optional, Tuple

from flask import current_app

from hitcounter.archive import HitArchiver
from hitcounter.buckets import (
    ALL_TYPES,
    BucketCalendar,
    PRIORITY,
    HitType,
    Window,
    current_window,
    load_timezone,
    selected_types,
    type_name,
)
from hitcounter.errors import StoreError
from hitcounter.gate import RequestContext, is_hit_allowed
from hitcounter.reports import HitTotals, ReportAggregator
from hitcounter.schema import HITS, schema_from_config
from hitcounter.store import HitStore, Increment, Where
from hitcounter.uniqueness import ClientToken, TokenCodec, Visit, build_strategy

log = logging.getLogger(__name__)

EXTENSION_KEY = "hit_counter"


def identity_hash(ip_address: str, url: str) -> str:
    return sha256(f"{ip_address}_{url}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class HitResult:
    counted: bool = False
    types: Tuple[HitType, ...] = ()
    unique: Tuple[HitType, ...] = ()
    token: Optional[str] = None         # set only when the client token changed
    token_max_age: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "counted": self.counted,
            "types": [type_name(k) for k in self.types],
            "unique": [type_name(k) for k in self.unique],
        }


class HitCounter:
    """
    Records hits into daily/weekly/monthly/yearly buckets and answers reports.

    One `record()` call:
      1. asks the allow-gate (crawlers, unknown address, DNT) and silently
         stops on a refusal;
      2. per selected type, in priority order, creates the bucket row with
         view_count=1 or bumps view_count in place;
      3. asks the uniqueness strategy and bumps unique_view_count on the same
         row when the visit is unique.
    """

    def __init__(self, store, strategy, calendar: Optional[BucketCalendar] = None,
                 codec: Optional[TokenCodec] = None, test_mode: bool = False):
        self.store = store
        self.strategy = strategy
        self.calendar = calendar or BucketCalendar()
        self.codec = codec
        self.test_mode = test_mode
        self.reports = ReportAggregator(store)
        self.archive = HitArchiver(store, self.calendar)

    @classmethod
    def from_config(cls, config: Mapping, store=None, clock=None) -> "HitCounter":
        store = store or HitStore(schema_from_config(config))
        return cls(
            store=store,
            strategy=build_strategy(config.get("HIT_COUNTER_STRATEGY"), store),
            calendar=BucketCalendar(load_timezone(config.get("HIT_COUNTER_TIMEZONE")), clock),
            codec=TokenCodec(config.get("SECRET_KEY") or "dev-secret",
                             salt=config.get("HIT_COUNTER_TOKEN_SALT") or "hit-counter"),
            test_mode=bool(config.get("HIT_COUNTER_TEST_MODE")),
        )

    # ---- recording ----------------------------------------------------------

    def record(self, url: str, ctx: RequestContext, types: int = ALL_TYPES,
               token: Optional[str] = None) -> HitResult:
        if not is_hit_allowed(ctx, self.test_mode):
            log.debug("hit on %s not counted (crawler=%s ip=%s dnt=%s)",
                      url, ctx.is_crawler, ctx.ip_address, ctx.do_not_track)
            return HitResult()

        now_dt = self.calendar.now()
        visit = Visit(
            identity_hash=identity_hash(ctx.ip_address, url),
            ctx=ctx,
            now=int(now_dt.timestamp()),
            token=self.codec.decode(token) if self.codec else ClientToken(),
        )

        counted, unique = [], []
        for kind in selected_types(types):
            window = current_window(kind, now_dt)
            where = (
                Where()
                .eq("url", url)
                .ge("from_time", window.start)
                .le("to_time", window.end)
                .eq("type", int(kind))
            )
            self._count_view(url, kind, window, where)
            counted.append(kind)
            if self._count_unique(visit, kind, window, where):
                unique.append(kind)

        result_token, max_age = None, None
        if visit.token_changed and self.codec:
            result_token, max_age = self._reissue(visit.token, now_dt, visit.now)

        return HitResult(
            counted=bool(counted),
            types=tuple(counted),
            unique=tuple(unique),
            token=result_token,
            token_max_age=max_age,
        )

    def _reissue(self, token: ClientToken, now_dt, now_ts: int) -> Tuple[str, int]:
        # the cookie must outlive its longest live entry, whichever type refreshed
        windows = {int(kind): current_window(kind, now_dt) for kind in PRIORITY}
        live = token.pruned(windows)
        max_age = max((windows[code].remaining(now_ts) for code in live.kinds()), default=0)
        return self.codec.encode(live), max_age

    def _count_view(self, url: str, kind: HitType, window: Window, where: Where) -> None:
        if self.store.count(HITS, where) == 0:
            try:
                self.store.insert(HITS, {
                    "url": url,
                    "type": int(kind),
                    "view_count": 1,
                    "unique_view_count": 0,
                    "from_time": window.start,
                    "to_time": window.end,
                })
                return
            except StoreError as e:
                if e.kind != StoreError.CONSTRAINT:
                    raise
                log.info("%s bucket for %s was created concurrently; incrementing instead",
                         type_name(kind), url)
        self.store.update(HITS, where, {"view_count": Increment()})

    def _count_unique(self, visit: Visit, kind: HitType, window: Window, where: Where) -> bool:
        # audit insert and counter bump commit together or not at all
        with self.store.atomic():
            if not self.strategy.claim(visit, kind, window):
                return False
            self.store.update(HITS, where, {"unique_view_count": Increment()})
        return True

    def hit_daily(self, url: str, ctx: RequestContext, token: Optional[str] = None) -> HitResult:
        return self.record(url, ctx, HitType.DAILY, token)

    def hit_weekly(self, url: str, ctx: RequestContext, token: Optional[str] = None) -> HitResult:
        return self.record(url, ctx, HitType.WEEKLY, token)

    def hit_monthly(self, url: str, ctx: RequestContext, token: Optional[str] = None) -> HitResult:
        return self.record(url, ctx, HitType.MONTHLY, token)

    def hit_yearly(self, url: str, ctx: RequestContext, token: Optional[str] = None) -> HitResult:
        return self.record(url, ctx, HitType.YEARLY, token)

    # ---- reporting / export -------------------------------------------------

    def report(self, url: Optional[str], from_time: Optional[int], to_time: Optional[int],
               types: int = ALL_TYPES) -> HitTotals:
        return self.reports.aggregate(url, from_time, to_time, types)

    def free_report(self, url: Optional[str], where: str, params: Optional[Mapping] = None) -> HitTotals:
        return self.reports.free_report(url, where, params)

    def save_hits(self, path, types: int = ALL_TYPES, delete_after: bool = False) -> bool:
        return self.archive.export_many(path, types, delete_after)


def get_hit_counter() -> HitCounter:
    return current_app.extensions[EXTENSION_KEY]
