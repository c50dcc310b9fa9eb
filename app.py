"""Application factory and entry point for the Flask application."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

from config import enable_sqlite_fks, load_config
from exceptions import (
    BillingError,
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from extensions import db, limiter
from models import (  # noqa: F401
    AppSetting,
    AutomationRun,
    Client,
    Invoice,
    NumberSequence,
    Package,
    Payment,
    Subscription,
    SubscriptionLog,
)
from routes import register_blueprints
from utils import parse_bool

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (NotFoundError, 404),
    (ValidationError, 422),
    (InvalidStateError, 409),
    (ConcurrencyError, 409),
)


def error_status(error: BillingError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 400


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, email_cfg, automation_cfg, numbering_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["EMAIL_CONFIG"] = email_cfg
    app.config["AUTOMATION_CONFIG"] = automation_cfg
    app.config["NUMBERING_CONFIG"] = numbering_cfg
    app.config["JSON_SORT_KEYS"] = False
    app.config["RATELIMIT_ENABLED"] = parse_bool(os.environ.get("RATELIMIT_ENABLED"), True)

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    # Register all blueprints
    register_blueprints(app)

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error):
        db.session.rollback()
        status = error_status(error)
        if status >= 409:
            logger.warning("%s: %s", error.kind, error)
        return (
            jsonify({"success": False, "error": error.kind, "message": str(error)}),
            status,
        )

    @app.errorhandler(404)
    def not_found(_error):
        return (
            jsonify({"success": False, "error": "not_found", "message": "Resource not found"}),
            404,
        )

    @app.errorhandler(500)
    def server_error(_error):
        return (
            jsonify({"success": False, "error": "server_error", "message": "Internal server error"}),
            500,
        )

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return (
            jsonify({
                "success": False,
                "error": "rate_limited",
                "message": "Too many requests. Try again later.",
            }),
            429,
        )

    logger.info("%s started (database %s)", app_cfg.name, db_uri.split("://", 1)[0])
    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
