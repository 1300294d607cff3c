from datetime import datetime, timedelta, timezone

import pytest

from hitcounter import create_app
from hitcounter.buckets import ALL_TYPES
from hitcounter.gate import RequestContext
from hitcounter.recorder import get_hit_counter
from hitcounter.store import Where

# a Wednesday afternoon
FIXED_NOW = datetime(2024, 3, 13, 15, 30, tzinfo=timezone.utc)

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class Browser:
    """One client: fixed address, keeps whatever token the counter hands back."""

    def __init__(self, counter, ip, user_agent=BROWSER_UA):
        self.counter = counter
        self.ctx = RequestContext.build(ip, user_agent)
        self.token = None

    def hit(self, url, types=ALL_TYPES):
        result = self.counter.record(url, self.ctx, types, self.token)
        if result.token:
            self.token = result.token
        return result


def make_app(tmp_path, clock, **overrides):
    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "HIT_COUNTER_STRATEGY": "cookie",
        "HIT_COUNTER_TEST_MODE": False,
        "HIT_COUNTER_AUTO_SCHEMA": True,
        "HIT_COUNTER_TRACK_REQUESTS": False,
        "HIT_COUNTER_EXPORT_DIR": str(tmp_path / "exports"),
    }
    config.update(overrides)
    app = create_app(config)
    app.extensions["hit_counter"].calendar.clock = clock
    return app


@pytest.fixture
def clock():
    return FrozenClock(FIXED_NOW)


@pytest.fixture(params=["cookie", "table"])
def strategy(request):
    return request.param


@pytest.fixture
def app(tmp_path, clock, strategy):
    return make_app(tmp_path, clock, HIT_COUNTER_STRATEGY=strategy)


@pytest.fixture
def cookie_app(tmp_path, clock):
    return make_app(tmp_path, clock, HIT_COUNTER_STRATEGY="cookie")


@pytest.fixture
def table_app(tmp_path, clock):
    return make_app(tmp_path, clock, HIT_COUNTER_STRATEGY="table")


def _pushed(app):
    ctx = app.app_context()
    ctx.push()
    return ctx


@pytest.fixture
def counter(app):
    ctx = _pushed(app)
    yield get_hit_counter()
    ctx.pop()


@pytest.fixture
def cookie_counter(cookie_app):
    ctx = _pushed(cookie_app)
    yield get_hit_counter()
    ctx.pop()


@pytest.fixture
def table_counter(table_app):
    ctx = _pushed(table_app)
    yield get_hit_counter()
    ctx.pop()


def hit_rows(counter, url=None, kind=None):
    flt = Where()
    if url is not None:
        flt.eq("url", url)
    if kind is not None:
        flt.eq("type", int(kind))
    return counter.store.select("hits", flt)
