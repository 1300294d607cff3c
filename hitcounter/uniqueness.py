# hitcounter/uniqueness.py
"""
Two ways of deciding whether a hit is a *unique* view inside its bucket.

cookie  the client carries a signed token listing, per identity hash and hit
        type, when it was last counted as unique. Stateless on the server; a
        client that drops or replays the token can skew unique counts.

table   the server keeps one audit row per (identity hash, type) inside the
        current window in the unique_hits table. Older rows are purged lazily
        right before each check.

Pick one per deployment (HIT_COUNTER_STRATEGY).
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Set, Tuple

from itsdangerous import BadData, URLSafeSerializer

from hitcounter.buckets import Window
from hitcounter.errors import ConfigError
from hitcounter.gate import RequestContext
from hitcounter.schema import UNIQUE_HITS
from hitcounter.store import Where

log = logging.getLogger(__name__)

COOKIE = "cookie"
TABLE = "table"
STRATEGIES = (COOKIE, TABLE)


# ---- client token -----------------------------------------------------------

@dataclass
class ClientToken:
    """identity hash -> {hit type code (str) -> {"created_at": unix}}"""

    entries: Dict[str, Dict[str, Dict[str, int]]] = field(default_factory=dict)

    def seen_at(self, identity_hash: str, kind: int) -> Optional[int]:
        entry = self.entries.get(identity_hash, {}).get(str(int(kind)))
        if not isinstance(entry, dict):
            return None
        created = entry.get("created_at")
        if isinstance(created, bool) or not isinstance(created, (int, float)):
            return None
        return int(created)

    def with_entry(self, identity_hash: str, kind: int, created_at: int) -> "ClientToken":
        entries = copy.deepcopy(self.entries)
        entries.setdefault(identity_hash, {})[str(int(kind))] = {"created_at": int(created_at)}
        return ClientToken(entries)

    def kinds(self) -> Set[int]:
        """Type codes held by at least one entry."""
        found = set()
        for per_identity in self.entries.values():
            for code in per_identity:
                try:
                    found.add(int(code))
                except ValueError:
                    continue
        return found

    def pruned(self, windows: Mapping[int, Window]) -> "ClientToken":
        """
        Keep only entries whose created_at lies in the current window of their
        type. Anything older can never make a hit non-unique again.
        """
        entries = {}
        for identity, per_identity in self.entries.items():
            live = {}
            for code in per_identity:
                try:
                    window = windows.get(int(code))
                except ValueError:
                    continue
                seen = self.seen_at(identity, int(code))
                if window is not None and seen is not None and window.contains(seen):
                    live[code] = {"created_at": seen}
            if live:
                entries[identity] = live
        return ClientToken(entries)

    def without(self, identity_hash: str, kind: int) -> "ClientToken":
        entries = copy.deepcopy(self.entries)
        per_identity = entries.get(identity_hash, {})
        per_identity.pop(str(int(kind)), None)
        if not per_identity:
            entries.pop(identity_hash, None)
        return ClientToken(entries)

    def __bool__(self):
        return bool(self.entries)


class TokenCodec:
    """Signed URL-safe base64 JSON. Anything that fails to verify is an empty token."""

    def __init__(self, secret_key: str, salt: str = "hit-counter"):
        self._s = URLSafeSerializer(secret_key, salt=salt)

    def encode(self, token: ClientToken) -> str:
        return self._s.dumps(token.entries)

    def decode(self, raw: Optional[str]) -> ClientToken:
        if not raw:
            return ClientToken()
        try:
            data = self._s.loads(raw)
        except BadData:
            log.debug("discarding unreadable hit token")
            return ClientToken()
        if not isinstance(data, dict):
            return ClientToken()
        entries = {
            str(k): {str(t): e for t, e in v.items() if isinstance(e, dict)}
            for k, v in data.items()
            if isinstance(v, dict)
        }
        return ClientToken(entries)


# ---- per-hit state shared with the strategies --------------------------------

@dataclass
class Visit:
    identity_hash: str
    ctx: RequestContext
    now: int
    token: ClientToken = field(default_factory=ClientToken)
    token_changed: bool = False


class CookieStrategy:
    name = COOKIE

    def is_unique(self, identity_hash: str, kind: int, window: Window, token: Optional[ClientToken], now: int) -> Tuple[bool, ClientToken]:
        token = token or ClientToken()
        seen = token.seen_at(identity_hash, kind)
        if seen is not None and window.contains(seen):
            return False, token
        return True, token.with_entry(identity_hash, kind, now)

    def claim(self, visit: Visit, kind: int, window: Window) -> bool:
        unique, token = self.is_unique(visit.identity_hash, kind, window, visit.token, visit.now)
        if unique:
            visit.token = token
            visit.token_changed = True
        return unique


class AuditTableStrategy:
    name = TABLE

    def __init__(self, store):
        if not store.schema.has(UNIQUE_HITS):
            raise ConfigError("the 'table' strategy needs a 'unique_hits' blueprint")
        self.store = store

    def purge(self, kind: int, window: Window) -> int:
        return self.store.delete(
            UNIQUE_HITS,
            Where().eq("type", int(kind)).lt("created_at", window.start),
        )

    def is_unique(self, identity_hash: str, kind: int, window: Window) -> bool:
        purged = self.purge(kind, window)
        if purged:
            log.debug("purged %s expired unique hit rows (type=%s)", purged, int(kind))
        seen = self.store.count(
            UNIQUE_HITS,
            Where()
            .eq("hashed_name", identity_hash)
            .eq("type", int(kind))
            .ge("created_at", window.start)
            .le("created_at", window.end),
        )
        return seen == 0

    def remember(self, identity_hash: str, kind: int, ctx: RequestContext, now: int) -> bool:
        return self.store.insert(UNIQUE_HITS, {
            "hashed_name": identity_hash,
            "type": int(kind),
            "device": ctx.device,
            "browser": ctx.browser,
            "platform": ctx.platform,
            "created_at": now,
        })

    def claim(self, visit: Visit, kind: int, window: Window) -> bool:
        if not self.is_unique(visit.identity_hash, kind, window):
            return False
        return self.remember(visit.identity_hash, kind, visit.ctx, visit.now)


def build_strategy(name: Optional[str], store):
    name = (name or COOKIE).strip().lower()
    if name == COOKIE:
        return CookieStrategy()
    if name == TABLE:
        return AuditTableStrategy(store)
    raise ConfigError(f"unknown uniqueness strategy {name!r} (expected one of {', '.join(STRATEGIES)})")
