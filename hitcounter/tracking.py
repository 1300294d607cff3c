# hitcounter/tracking.py
"""Glue between Flask requests/responses and the hit counter."""
from flask import current_app, g, request

from hitcounter.buckets import ALL_TYPES
from hitcounter.errors import StoreError
from hitcounter.gate import RequestContext
from hitcounter.recorder import HitResult, get_hit_counter

_PENDING = "hit_token"


def cookie_name() -> str:
    return current_app.config.get("HIT_COUNTER_COOKIE_NAME") or "hc_seen"


def request_context() -> RequestContext:
    return RequestContext.from_request(request)


def record_request_hit(url: str | None = None, types: int = ALL_TYPES) -> HitResult:
    """Count a hit for `url` (default: the request path) and queue the refreshed token."""
    result = get_hit_counter().record(
        url or request.path,
        request_context(),
        types,
        token=request.cookies.get(cookie_name()),
    )
    if result.token:
        setattr(g, _PENDING, {"value": result.token, "max_age": result.token_max_age})
    return result


def apply_token_cookie(response):
    pending = g.pop(_PENDING, None)
    if pending:
        response.set_cookie(
            cookie_name(),
            pending["value"],
            max_age=pending["max_age"],
            path="/",
            httponly=True,
            samesite="Lax",
        )
    return response


def clear_token_cookie(response):
    # expires in the past, so the browser drops it
    response.delete_cookie(cookie_name(), path="/", httponly=True, samesite="Lax")
    return response


def install_hit_tracking(app):
    @app.before_request
    def _track_hit():
        if not app.config.get("HIT_COUNTER_TRACK_REQUESTS"):
            return
        # skip obvious noise / health / static / the API itself
        if request.endpoint in ("static",) or request.path.startswith(("/healthz", "/hits")):
            return
        try:
            record_request_hit()
        except StoreError:
            # don't break the site if counting fails
            app.logger.exception("hit tracking failed for %s", request.path)

    @app.after_request
    def _hit_cookie(resp):
        return apply_token_cookie(resp)
