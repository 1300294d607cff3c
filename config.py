# config.py
import os
from pathlib import Path

# ---- base directories -------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
INSTANCE_DIR = os.environ.get("FLASK_INSTANCE_PATH", str(BASE_DIR / "instance"))


# ---- tiny helpers -----------------------------------------------------------
def _to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on", "y"}


def _database_url() -> str | None:
    raw = os.getenv("DATABASE_URL", "").strip()
    # Render/Heroku give postgres://; normalize to postgresql+psycopg2://
    if raw.startswith("postgres://"):
        raw = raw.replace("postgres://", "postgresql+psycopg2://", 1)
    return raw or None


def engine_options(uri: str, timeout: float) -> dict:
    """Bound every store call: lock wait on SQLite, statement + pool wait elsewhere."""
    options = {"pool_pre_ping": True}
    if uri.startswith("sqlite"):
        options["connect_args"] = {"timeout": timeout}
        return options
    options["pool_timeout"] = timeout
    if uri.startswith("postgresql"):
        options["connect_args"] = {"options": f"-c statement_timeout={int(timeout * 1000)}"}
    return options


# ----------------------------------------------------------------------------
class Config:
    """
    Base configuration loaded by the app factory via:
      app.config.from_object("config.Config")
    """

    # ------------ Core / Security ------------
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # ------------ Database ------------
    # None -> SQLite file in the instance folder (filled in by create_app)
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ------------ Hit counter ------------
    HIT_COUNTER_STRATEGY = os.getenv("HIT_COUNTER_STRATEGY", "cookie")  # cookie | table
    HIT_COUNTER_TEST_MODE = _to_bool(os.getenv("HIT_COUNTER_TEST_MODE"), default=False)
    HIT_COUNTER_TIMEZONE = os.getenv("HIT_COUNTER_TIMEZONE", "UTC")
    HIT_COUNTER_COOKIE_NAME = os.getenv("HIT_COUNTER_COOKIE_NAME", "hc_seen")
    HIT_COUNTER_TOKEN_SALT = os.getenv("HIT_COUNTER_TOKEN_SALT", "hit-counter")

    # schema overrides: a {"blueprints": {...}} mapping (instance config.py)
    # or a JSON file with the same shape
    HIT_COUNTER_BLUEPRINTS = None
    HIT_COUNTER_SCHEMA_FILE = os.getenv("HIT_COUNTER_SCHEMA_FILE")
    HIT_COUNTER_MERGE_SCHEMA = _to_bool(os.getenv("HIT_COUNTER_MERGE_SCHEMA"), default=True)
    HIT_COUNTER_AUTO_SCHEMA = _to_bool(os.getenv("HIT_COUNTER_AUTO_SCHEMA"), default=True)

    HIT_COUNTER_TRACK_REQUESTS = _to_bool(os.getenv("HIT_COUNTER_TRACK_REQUESTS"), default=False)
    HIT_COUNTER_STORE_TIMEOUT = float(os.getenv("HIT_COUNTER_STORE_TIMEOUT", "5"))
    HIT_COUNTER_EXPORT_DIR = os.getenv("HIT_COUNTER_EXPORT_DIR")  # default <instance>/exports
