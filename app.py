from dotenv import load_dotenv
load_dotenv()
from flask import Flask, request, jsonify, session as flask_session
from flask_compress import Compress
from flask_cors import CORS
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timedelta
import os
import time
import redis
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import db, limiter

# Models must be imported before create_all().
import models_cards  # noqa: F401
import models_activity  # noqa: F401
import models_redemptions  # noqa: F401


def _is_production() -> bool:
    return bool(os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production")


app = Flask(__name__)
app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

# --- SECRET_KEY for sessions (user sign-in + admin dashboards) ---
secret_key = os.getenv('SECRET_KEY') or os.getenv('FLASK_SECRET_KEY')
if not secret_key:
    # Local dev only. Refused below in production.
    secret_key = 'dev-secret-key-change-me'
app.config['SECRET_KEY'] = secret_key
app.secret_key = secret_key

if _is_production() and secret_key.startswith("dev-secret-key-change"):
    raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")

# Cookie flags (production is served over HTTPS).
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
if _is_production():
    app.config["SESSION_COOKIE_SECURE"] = True

# NOTE: PERMANENT_SESSION_LIFETIME only applies when session.permanent=True (set in before_request).
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "12")))
app.config["SESSION_IDLE_TIMEOUT_MINUTES"] = int(os.getenv("SESSION_IDLE_TIMEOUT_MINUTES", "60"))


# Optional: server-side sessions (allows true revocation when using a shared store like Redis).
# Enable by setting USE_SERVER_SIDE_SESSIONS=1 and SESSION_REDIS_URL (or REDIS_URL).
if os.getenv("USE_SERVER_SIDE_SESSIONS", "0") == "1":
    from flask_session import Session

    redis_url = os.getenv("SESSION_REDIS_URL") or os.getenv("REDIS_URL")
    if not redis_url:
        raise RuntimeError("USE_SERVER_SIDE_SESSIONS=1 but SESSION_REDIS_URL/REDIS_URL is not set")
    app.config["SESSION_TYPE"] = "redis"
    app.config["SESSION_REDIS"] = redis.from_url(redis_url)
    app.config["SESSION_USE_SIGNER"] = True
    app.config["SESSION_PERMANENT"] = True
    app.config["SESSION_KEY_PREFIX"] = os.getenv("SESSION_KEY_PREFIX", "cards:")
    Session(app)


# -------------------------------
# Client IP resolution
# -------------------------------
# Behind a PaaS proxy request.remote_addr is the proxy; trust a single hop in production.
if _is_production():
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

_db_url = os.getenv("DATABASE_URL")
if not _db_url:
    if os.getenv("RENDER") == "true":
        raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
    _db_url = "sqlite:///cards.db"

if _db_url.startswith("postgres://"):
    _db_url = _db_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = _db_url
if not _db_url.startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }

# Rate limiting
# - In production, set RATE_LIMIT_STORAGE_URL to a Redis URL for multi-instance correctness.
# - Defaults to in-memory storage for simplicity.
app.config["RATELIMIT_ENABLED"] = os.getenv("RATELIMIT_ENABLED", "1") == "1"
app.config["RATELIMIT_STORAGE_URI"] = os.getenv("RATE_LIMIT_STORAGE_URL", "memory://")
app.config["RATELIMIT_DEFAULT"] = "200 per day;50 per hour"

# Initialize extensions
db.init_app(app)
CORS(app)
Compress(app)
limiter.init_app(app)


# -------------------------------
# Session lifetime + idle timeout enforcement
# -------------------------------

def _session_has_auth() -> bool:
    if flask_session.get("account_id"):
        return True
    # Admin sections use per-dashboard flags (admin_cards / admin_redemptions).
    for k, v in list(flask_session.items()):
        if k.startswith("admin_") and v:
            return True
    return False


@app.before_request
def _enforce_session_expiry_and_idle_timeout():
    if not _session_has_auth():
        return

    flask_session.permanent = True

    idle_minutes = int(app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", 60))
    now_ts = int(time.time())
    last_seen = flask_session.get("_last_seen_ts")
    if isinstance(last_seen, int) and idle_minutes > 0:
        if now_ts - last_seen > idle_minutes * 60:
            # Idle timeout: clear all session state.
            flask_session.clear()
            return

    flask_session["_last_seen_ts"] = now_ts


@app.after_request
def add_perf_headers(resp):
    # Responses are user-specific; never cache them.
    resp.headers.setdefault("Cache-Control", "no-store")
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    return resp


@app.errorhandler(429)
def rate_limited(e):
    return jsonify({"success": False, "status": "rate_limited", "error": "Too many requests, slow down."}), 429


# ==================== HEALTH CHECK ====================

@app.route('/api/health', methods=['GET'])
def health_check():
    try:
        db.session.execute(text('SELECT 1'))
        return jsonify({
            'success': True,
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'database': 'connected',
        })
    except SQLAlchemyError:
        app.logger.exception("Health check failed")
        db.session.rollback()
        return jsonify({
            'success': False,
            'status': 'unhealthy',
            'timestamp': datetime.utcnow().isoformat(),
            'database': 'disconnected',
        }), 503


# Register split-file blueprints
from auth import auth_api
from claims import claims_api
from redemptions import redemptions_api
from admin_cards import admin_cards
from admin_redemptions import admin_redemptions

app.register_blueprint(auth_api)
app.register_blueprint(claims_api)
app.register_blueprint(redemptions_api)
app.register_blueprint(admin_cards)
app.register_blueprint(admin_redemptions)

with app.app_context():
    db.create_all()

    # create_all() does not add new columns to existing tables.
    def _ensure_columns(table_name: str, columns_sql: dict[str, str]):
        """Add missing columns on SQLite/Postgres without a migration tool."""
        dialect = db.engine.dialect.name

        if dialect == 'sqlite':
            existing = [r[1] for r in db.session.execute(text(f'PRAGMA table_info({table_name})')).fetchall()]
            for col, col_sql in columns_sql.items():
                if col not in existing:
                    db.session.execute(text(f'ALTER TABLE {table_name} ADD COLUMN {col_sql}'))
            db.session.commit()
            return

        if dialect in ('postgresql', 'postgres'):
            for _col, col_sql in columns_sql.items():
                db.session.execute(text(f'ALTER TABLE {table_name} ADD COLUMN IF NOT EXISTS {col_sql}'))
            db.session.commit()

    try:
        _ensure_columns('redemptions', {
            'external_ref': 'external_ref VARCHAR(128)',
        })
    except SQLAlchemyError:
        # Usually a DB user without ALTER privileges.
        app.logger.warning("Schema upgrade for redemptions skipped", exc_info=True)
        db.session.rollback()


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print("=" * 60)
    print("Card Claim & Redemption Service")
    print("=" * 60)
    print(f"Database: {app.config['SQLALCHEMY_DATABASE_URI'].split('@')[-1]}")
    print(f"Admin Cards: POST http://localhost:{port}/api/admin/cards/login")
    print(f"Admin Redemptions: POST http://localhost:{port}/api/admin/redemptions/login")
    print(f"Health: http://localhost:{port}/api/health")
    print("=" * 60)

    app.run(debug=debug, port=port)
