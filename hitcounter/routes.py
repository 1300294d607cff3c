# hitcounter/routes.py
from flask import Blueprint, current_app, jsonify, request

from hitcounter.buckets import parse_types
from hitcounter.errors import StoreError
from hitcounter.recorder import get_hit_counter
from hitcounter.tracking import clear_token_cookie, record_request_hit

hits_bp = Blueprint("hits_bp", __name__, url_prefix="/hits")


def _types_arg(value):
    if isinstance(value, (list, tuple)):
        value = ",".join(str(v) for v in value)
    return parse_types(value)


def _int_arg(name):
    raw = request.args.get(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


@hits_bp.errorhandler(StoreError)
def _store_unavailable(exc):
    current_app.logger.error("hit store error on %s: %s", request.path, exc)
    return jsonify(error="store unavailable", kind=exc.kind), 503


@hits_bp.post("")
def record_hit():
    data = request.get_json(silent=True) or {}
    url = str(data.get("url") or request.args.get("url") or "").strip()
    if not url:
        return jsonify(error="url is required"), 400
    try:
        types = _types_arg(data.get("types", request.args.get("types")))
    except ValueError as e:
        return jsonify(error=str(e)), 400

    result = record_request_hit(url, types)
    return jsonify(result.as_dict())


@hits_bp.get("/report")
def report():
    try:
        from_time = _int_arg("from")
        to_time = _int_arg("to")
        types = _types_arg(request.args.get("types"))
    except ValueError as e:
        return jsonify(error=str(e)), 400

    url = (request.args.get("url") or "").strip() or None
    totals = get_hit_counter().report(url, from_time, to_time, types)
    return jsonify(totals.as_dict())


@hits_bp.delete("/token")
def forget_token():
    """Drop the uniqueness token; the next hit from this browser counts as unique."""
    return clear_token_cookie(jsonify(cleared=True))
