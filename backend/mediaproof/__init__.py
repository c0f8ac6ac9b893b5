# mediaproof/__init__.py
"""
App factory.

    - CORS origins read from CORS_ORIGINS env var (no hardcoded localhost in prod)
    - Database URI from SQLALCHEMY_DATABASE_URI env var
    - SECRET_KEY required in production (no default fallback)
    - Detection, queue and billing settings from env vars, see _load_settings()
    - Gunicorn-safe guards so scan workers and the reaper run in one process
    - Flask-Migrate manages schema; db.create_all() is not called

Tests pass a config mapping plus a fake detection provider / requests
session; both are forwarded to init_extensions().
"""

from __future__ import annotations
from flask_cors import CORS
from flask_migrate import Migrate
import os
import logging
import re
import tempfile
import traceback
from flask import Flask, jsonify
from .extensions import init_extensions, db, get_scan_queue, get_worker_pool
from .errors import MediaProofError
from . import models
from .payments.routes import payments_bp
from .scans.routes import scans_bp
from .users.routes import users_bp
from .scheduler import init_scheduler

error_logger = logging.getLogger("mediaproof.errors")


def _is_production() -> bool:
    """Detect production by checking CORS_ORIGINS for https."""
    return os.getenv("CORS_ORIGINS", "").startswith("https://")


def _is_gunicorn_master() -> bool:
    """
    Guard for background workers under Gunicorn.
    With multiple workers, the scan pool and reaper must only run once.
    Returns True under the Flask dev server, or under Gunicorn when
    SCHEDULER_ENABLED is true for this process.
    """
    server = os.getenv("SERVER_SOFTWARE", "")
    if "gunicorn" not in server.lower():
        return True
    return os.environ.get("SCHEDULER_ENABLED", "true").lower() == "true"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _load_settings() -> dict:
    return {
        # Detection provider
        "DETECTION_API_URL": os.getenv("DETECTION_API_URL"),
        "DETECTION_API_KEY": os.getenv("DETECTION_API_KEY") or os.getenv("REALITY_DEFENDER_API_KEY"),
        "DETECTION_TIMEOUT": float(os.getenv("DETECTION_TIMEOUT", "120")),
        "DETECTION_POLL_INTERVAL": float(os.getenv("DETECTION_POLL_INTERVAL", "2")),
        "DETECTION_MOCK": _env_bool("DETECTION_MOCK", False),
        "MEDIA_FETCH_TIMEOUT": float(os.getenv("MEDIA_FETCH_TIMEOUT", "30")),
        "MAX_MEDIA_BYTES": int(os.getenv("MAX_MEDIA_BYTES", str(50 * 1024 * 1024))),
        # Scans
        "BULK_MAX_PARALLEL": int(os.getenv("BULK_MAX_PARALLEL", "3")),
        "SCAN_REFUND_ON_FAILURE": _env_bool("SCAN_REFUND_ON_FAILURE", False),
        "SCAN_QUEUE_NAME": os.getenv("SCAN_QUEUE_NAME", "scanQueue"),
        "SCAN_QUEUE_CONCURRENCY": int(os.getenv("SCAN_QUEUE_CONCURRENCY", "2")),
        "SCAN_QUEUE_POLL_INTERVAL": float(os.getenv("SCAN_QUEUE_POLL_INTERVAL", "1")),
        "SCAN_QUEUE_STALE_AFTER": float(os.getenv("SCAN_QUEUE_STALE_AFTER", "900")),
        "SCAN_STAGING_DIR": os.getenv(
            "SCAN_STAGING_DIR", os.path.join(tempfile.gettempdir(), "mediaproof-staging")
        ),
        "WORKERS_ENABLED": _env_bool("WORKERS_ENABLED", True),
        # Billing / accounts
        "PAYSTACK_SECRET_KEY": os.getenv("PAYSTACK_SECRET_KEY"),
        "SIGNUP_CREDITS": int(os.getenv("SIGNUP_CREDITS", "0")),
    }


def create_app(config: dict | None = None, *, detection_provider=None, http_session=None) -> Flask:
    app = Flask(__name__)
    overrides = dict(config or {})

    is_prod = _is_production()

    # ── Logging ──────────────────────────────────────────────────────
    if is_prod:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        app.logger.setLevel(logging.INFO)
    else:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )
        app.logger.setLevel(logging.DEBUG)

    logging.getLogger("werkzeug").setLevel(logging.INFO)
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    # ─────────────────────────────────────────────────────────────────

    # ── CORS ────────────────────────────────────────────────────────
    cors_env = os.getenv("CORS_ORIGINS")
    if cors_env:
        cors_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        cors_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            re.compile(r"http://192\.168\.\d+\.\d+:3000"),
        ]

    CORS(app, resources={
        r"/*": {
            "origins": cors_origins,
            "supports_credentials": True,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "OPTIONS"],
        }
    })

    # ── Secret Key ───────────────────────────────────────────────────
    secret_key = overrides.get("SECRET_KEY") or os.getenv("SECRET_KEY")
    if is_prod and not secret_key:
        raise RuntimeError(
            "SECRET_KEY environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    app.config["SECRET_KEY"] = secret_key or "dev-secret-key-change-me"

    # ── Database ─────────────────────────────────────────────────────
    database_uri = overrides.get("SQLALCHEMY_DATABASE_URI") or os.getenv("SQLALCHEMY_DATABASE_URI")
    if not database_uri:
        raise RuntimeError(
            "SQLALCHEMY_DATABASE_URI environment variable is not set. "
            "Set it to a database connection string, e.g.: "
            "postgresql://mediaproof:PASSWORD@db:5432/mediaproof"
        )
    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # ── Detection / queue / billing settings ─────────────────────────
    app.config.update(_load_settings())
    app.config.update(overrides)

    # ── Extensions ───────────────────────────────────────────────────
    init_extensions(app, detection_provider=detection_provider, http_session=http_session)
    migrate = Migrate(app, db)

    # ── Blueprints ───────────────────────────────────────────────────
    app.register_blueprint(scans_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(users_bp)

    # ── Global Error Handlers ────────────────────────────────────────
    # Return clean JSON for all errors: never expose tracebacks to users.

    @app.errorhandler(MediaProofError)
    def domain_error(e):
        if e.http_status >= 500:
            error_logger.error("%s: %s", type(e).__name__, e.message)
        return jsonify({"error": e.label, "message": e.message}), e.http_status

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({
            "error": "Bad request",
            "message": str(e.description) if hasattr(e, "description") else "The request was malformed or invalid.",
        }), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({
            "error": "Unauthorized",
            "message": "Authentication is required.",
        }), 401

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "Method not allowed",
            "message": "This HTTP method is not allowed for this endpoint.",
        }), 405

    @app.errorhandler(413)
    def payload_too_large(e):
        return jsonify({
            "error": "Payload too large",
            "message": "The request body exceeds the maximum allowed size.",
        }), 413

    @app.errorhandler(500)
    def internal_error(e):
        error_logger.error(
            "500 Internal Server Error:\n%s", traceback.format_exc()
        )
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500

    @app.errorhandler(Exception)
    def catch_all(e):
        """Catch-all for any unhandled exception: never leak tracebacks."""
        error_logger.error(
            "Unhandled exception: %s\n%s", str(e), traceback.format_exc()
        )
        db.session.rollback()
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500

    # ─────────────────────────────────────────────────────────────────

    # Health check
    @app.get("/health")
    def health():
        return jsonify(
            status="up and running",
            queue=get_scan_queue().counts(),
            workers=get_worker_pool().running,
        ), 200

    # ── Schema Management ────────────────────────────────────────────
    # Flask-Migrate (Alembic) manages schema changes.
    # Run: flask --app mediaproof db upgrade
    # ─────────────────────────────────────────────────────────────────

    # ── Background Workers ───────────────────────────────────────────
    # Scan queue workers and the stale-job reaper must only start once.
    # Set WORKERS_ENABLED=false on web processes when running
    # backend/worker.py as a dedicated queue process.
    if app.config["WORKERS_ENABLED"] and _is_gunicorn_master():
        app.extensions["mediaproof.workers"].start()
        init_scheduler(app)
    else:
        logging.getLogger(__name__).info(
            "Scan workers disabled for this process"
        )
    # ─────────────────────────────────────────────────────────────────

    return app
