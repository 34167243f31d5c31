import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import inspect
from flask import Flask, g, jsonify, request
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from flask_migrate import upgrade as migrate_upgrade

from .config import INSTANCE_DIR, get_config_class
from .errors import FenstriError
from .extensions import csrf, db, login_manager, migrate
from .invoicing import format_currency, format_date
from .models import (
    Invoice,
    Organization,
    PaymentEvent,
    Photo,
    Profile,
    Property,
    Subscription,
    WorkOrder,
    WorkOrderItem,
)
from .tenant import bootstrap_demo_tenant, get_current_user, set_tenant_session


def create_app(config_name: str | None = None) -> Flask:
    """Application factory that sets up extensions, config, and blueprints."""
    base_dir = Path(__file__).resolve().parent.parent
    load_dotenv(base_dir / ".env")

    app = Flask(__name__, instance_path=str(INSTANCE_DIR), instance_relative_config=True)

    app.config.from_object(get_config_class(config_name))

    if app.config.get("ENV") == "production":
        if app.config.get("SECRET_KEY") == "dev-insecure-key":
            raise RuntimeError("SECRET_KEY must be set via environment variables for production deployments.")
        if not app.config.get("STRIPE_WEBHOOK_VERIFY"):
            raise RuntimeError("Stripe webhook signature verification cannot be disabled in production.")

    if app.config.get("USE_PROXY_FIX"):
        app.wsgi_app = ProxyFix(  # type: ignore[attr-defined]
            app.wsgi_app,
            x_for=app.config.get("TRUSTED_PROXY_COUNT", 1),
            x_proto=app.config.get("TRUSTED_PROXY_COUNT", 1),
            x_host=app.config.get("TRUSTED_PROXY_COUNT", 1),
            x_port=app.config.get("TRUSTED_PROXY_COUNT", 1),
        )

    _configure_logging(app)

    os.makedirs(app.instance_path, exist_ok=True)

    db.init_app(app)
    migrations_dir = base_dir / "migrations"
    migrate.init_app(app, db, directory=str(migrations_dir))
    csrf.init_app(app)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.unauthorized_handler
    def _on_unauthorized():  # pragma: no cover - view glue
        return jsonify({"error": "Please sign in to continue."}), 401

    app.add_template_filter(format_currency, "currency")
    app.add_template_filter(format_date, "de_date")

    from .routes import admin_bp, auth_bp, dashboard_bp, invoice_bp, property_bp, webhook_bp, work_order_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(property_bp)
    app.register_blueprint(work_order_bp)
    app.register_blueprint(invoice_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(dashboard_bp)

    @login_manager.user_loader
    def load_user(user_id: str):  # pragma: no cover - simple loader
        return db.session.get(Profile, user_id) if user_id else None

    with app.app_context():
        if app.config.get("RUN_DB_UPGRADE_ON_START"):
            try:
                if migrations_dir.exists() and any(migrations_dir.iterdir()):
                    migrate_upgrade(directory=str(migrations_dir))
                else:
                    app.logger.info(
                        "Skipping automatic database upgrade because the migrations directory is missing or empty."
                    )
            except Exception:
                app.logger.exception("Automatic database upgrade failed")
                raise

        # Create tables automatically when no schema exists (helps first run/local dev)
        inspector = inspect(db.engine)
        if not inspector.get_table_names():
            db.create_all()
        if app.config.get("BOOTSTRAP_DEMO_DATA"):
            bootstrap_demo_tenant()

    @app.before_request
    def attach_request_context():
        user = get_current_user()
        if user and user.is_authenticated:
            set_tenant_session(user)

    @app.after_request
    def apply_security_headers(response):  # pragma: no cover - response mutation
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if app.config.get("SESSION_COOKIE_SECURE") and request.is_secure:
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response

    @app.teardown_appcontext
    def remove_user(exception=None):
        g.pop("current_user", None)
        g.pop("current_organization", None)

    @app.shell_context_processor
    def shell_context():
        return {
            "db": db,
            "Organization": Organization,
            "Profile": Profile,
            "Property": Property,
            "WorkOrder": WorkOrder,
            "WorkOrderItem": WorkOrderItem,
            "Invoice": Invoice,
            "Photo": Photo,
            "Subscription": Subscription,
            "PaymentEvent": PaymentEvent,
        }

    def _json_error(status: int, message: str):
        return jsonify({"error": message}), status

    @app.errorhandler(FenstriError)
    def handle_domain_error(error: FenstriError):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.warning("%s: %s", type(error).__name__, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(CSRFError)
    def handle_csrf_error(error):  # pragma: no cover - framework hook
        return _json_error(403, error.description or "CSRF token missing or invalid")

    @app.errorhandler(Exception)
    def handle_exception(error):  # pragma: no cover - framework hook
        if isinstance(error, HTTPException):
            return _json_error(error.code or 500, error.description or error.name)
        db.session.rollback()
        logging.exception("Unhandled server error", exc_info=error)
        return _json_error(500, "Internal server error")

    return app


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format=app.config.get("LOG_FORMAT"))
    app.logger.setLevel(level)
