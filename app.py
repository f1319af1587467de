import os
from pathlib import Path

from flask import Flask, jsonify

from extensions import db
from discovery import init_discovery
from discovery.settings import DEFAULTS as DISCOVERY_DEFAULTS


# ====== Feature toggle ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default, cast=float):
    """Parse a numeric setting, keeping the default when the value is unusable."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        print(f"⚠️ Invalid {name} value: {raw!r}. Using default {default}.")
        return default


USE_SUPABASE = _env_flag("USE_SUPABASE", False)  # ✅ Mirror discoveries + read landmarks from Supabase
USE_DISCOVERY_LEDGER = _env_flag("USE_DISCOVERY_LEDGER", True)  # 🧭 Toggle discovery endpoints

# Try to import Supabase client
try:
    from supabase import create_client, Client  # type: ignore
except Exception:
    create_client, Client = None, None


def _discovery_env_config() -> dict:
    config = {}
    for key, default in DISCOVERY_DEFAULTS.items():
        if default is None or isinstance(default, str):
            value = os.environ.get(key)
            if value:
                config[key] = value
            continue
        config[key] = _env_number(key, default, cast=type(default))
    for key in ("LANDMARK_CATALOG_PATH", "REWARD_TABLE_PATH"):
        if os.environ.get(key):
            config[key] = os.environ[key]
    config["LANDMARK_CATALOG_CACHE_SECONDS"] = _env_number("LANDMARK_CATALOG_CACHE_SECONDS", 300, cast=int)
    return config


def _supabase_client():
    supabase_url = os.environ.get("SUPABASE_URL")
    supabase_key = os.environ.get("SUPABASE_KEY")
    if not (USE_SUPABASE and create_client and supabase_url and supabase_key):
        return None
    try:
        return create_client(supabase_url, supabase_key)
    except Exception as e:
        print("⚠️ Could not init Supabase client:", e)
        return None


def create_app(test_config=None, clock=None):
    """Build the Flask app; tests pass `test_config` to point at an isolated database."""
    # ====== Flask setup ======
    app = Flask(__name__)
    app.config.setdefault("USE_SUPABASE", USE_SUPABASE)
    app.config.setdefault("USE_DISCOVERY_LEDGER", USE_DISCOVERY_LEDGER)
    app.config.update(_discovery_env_config())

    sqlite_path = Path(app.root_path) / "data" / "discovery.db"
    app.config.setdefault("SQLALCHEMY_DATABASE_URI", os.environ.get("DATABASE_URL") or f"sqlite:///{sqlite_path}")
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)

    if test_config:
        app.config.update(test_config)

    if app.config["SQLALCHEMY_DATABASE_URI"] == f"sqlite:///{sqlite_path}":
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        # Concurrent writers wait on SQLite's lock instead of failing fast.
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {"connect_args": {"timeout": 30}})
    else:
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {"pool_recycle": 300, "pool_pre_ping": True})

    # ====== Supabase setup ======
    if "SUPABASE_CLIENT" not in app.config:
        app.config["SUPABASE_CLIENT"] = _supabase_client()

    db.init_app(app)
    init_discovery(app, clock=clock)

    @app.get("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    with app.app_context():
        db.create_all()

    return app


# ====== Entrypoint ======
if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True)
