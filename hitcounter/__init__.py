# hitcounter/__init__.py
import logging
import uuid
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from flask import Flask, g, request
from werkzeug.middleware.proxy_fix import ProxyFix

load_dotenv(find_dotenv(), override=False)  # picks up your .env locally

from config import engine_options
from hitcounter.cli import register_cli
from hitcounter.extensions import db
from hitcounter.recorder import EXTENSION_KEY, HitCounter
from hitcounter.schema import ensure_schema
from hitcounter.tracking import install_hit_tracking


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    # 1) Base config object (config.py at project root)
    app.config.from_object("config.Config")

    # 2) Instance overrides (instance/config.py) – safe if missing
    app.config.from_pyfile("config.py", silent=True)

    # 3) Environment overrides (e.g., FLASK_HIT_COUNTER_STRATEGY)
    app.config.from_prefixed_env()

    # 4) Explicit overrides (tests, embedding apps)
    if test_config:
        app.config.from_mapping(test_config)

    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{Path(app.instance_path) / 'hits.db'}"
    if not app.config.get("SQLALCHEMY_ENGINE_OPTIONS"):
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options(
            app.config["SQLALCHEMY_DATABASE_URI"],
            float(app.config.get("HIT_COUNTER_STORE_TIMEOUT") or 5),
        )

    app.logger.setLevel(app.config.get("LOG_LEVEL") or logging.INFO)

    db.init_app(app)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    # ConfigError here is fatal: a broken schema map must not serve traffic
    counter = HitCounter.from_config(app.config)
    app.extensions[EXTENSION_KEY] = counter

    if app.config.get("HIT_COUNTER_AUTO_SCHEMA"):
        with app.app_context():
            failed = [o for o in ensure_schema(counter.store) if not o.ok]
            for o in failed:
                app.logger.warning("schema item %s.%s not applied: %s", o.table, o.item, o.error)

    @app.before_request
    def _trace_in():
        g.reqid = str(uuid.uuid4())[:8]
        app.logger.debug("[%s] → %s %s ep=%s", g.reqid, request.method, request.path, request.endpoint)

    @app.after_request
    def _trace_out(resp):
        app.logger.debug("[%s] ← %s", getattr(g, "reqid", "????"), resp.status)
        return resp

    install_hit_tracking(app)
    register_cli(app)

    from hitcounter.routes import hits_bp
    app.register_blueprint(hits_bp)

    @app.route("/healthz")
    def healthz():
        return "ok", 200

    return app
