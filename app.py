"""Flask application factory for the CivicWatch complaint service."""
import os
import time
from typing import Optional

import click
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_wtf.csrf import CSRFError
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from extensions import csrf, db, login_manager, migrate
from utils.logger import init_logging
from utils.security import apply_security_headers, sanitize_input


def _error(message: str, status: int, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def register_error_handlers(app: Flask) -> None:
    from utils.ai_gateway import AIGatewayError
    from utils.complaint_service import (
        AccessDeniedError,
        ComplaintNotFoundError,
        ComplaintValidationError,
        EvidenceUploadError,
    )
    from utils.tracking_code import TrackingCodeExhaustedError

    @app.errorhandler(400)
    def bad_request(error):
        return _error(getattr(error, "description", None) or "Bad request", 400)

    @app.errorhandler(CSRFError)
    def csrf_error(error):
        app.logger.warning("CSRF validation failed", extra={"reason": error.description})
        return _error(error.description, 400)

    @app.errorhandler(401)
    def unauthorized(error):
        return _error("Authentication required", 401)

    @app.errorhandler(403)
    def forbidden(error):
        app.logger.warning("403 Forbidden", extra={"path": request.path, "method": request.method})
        return _error("Forbidden", 403)

    @app.errorhandler(404)
    def not_found_error(error):
        app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return _error("Not found", 404)

    @app.errorhandler(413)
    def too_large(error):
        return _error("Upload too large", 413)

    @app.errorhandler(429)
    def too_many(error):
        return _error("Too many requests", 429)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception("500 Internal Server Error")
        return _error("Internal server error", 500)

    @app.errorhandler(ComplaintValidationError)
    def validation_failed(error):
        if error.errors:
            return _error(error.message, 400, errors=error.errors)
        return _error(error.message, 400)

    @app.errorhandler(ComplaintNotFoundError)
    def complaint_not_found(error):
        return _error(error.message, 404)

    @app.errorhandler(AccessDeniedError)
    def access_denied(error):
        app.logger.warning("Complaint access denied", extra={"path": request.path, "reason": str(error)})
        return _error(str(error), 403)

    @app.errorhandler(TrackingCodeExhaustedError)
    def tracking_exhausted(error):
        return _error("Could not issue a tracking code. Please try again.", 503)

    @app.errorhandler(EvidenceUploadError)
    def evidence_failed(error):
        return jsonify(error.to_dict()), 502

    @app.errorhandler(AIGatewayError)
    def ai_failed(error):
        return _error(str(error), error.status_code)

    @app.errorhandler(SQLAlchemyError)
    def database_error(error):
        db.session.rollback()
        app.logger.exception("Database error")
        return _error("Internal server error", 500)


def ensure_default_roles_and_admin(app: Flask) -> None:
    """Ensure baseline roles exist and a default admin can sign in without registering."""
    from models import Role, User  # Local import to avoid circular dependency
    from routes.auth import ROLE_DESCRIPTIONS

    role_cache = {name: Role.get_or_create(name, description=desc) for name, desc in ROLE_DESCRIPTIONS.items()}

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_role = role_cache["admin"]
    admin_user = User.query.filter_by(email=admin_email).first()
    if admin_user:
        if admin_user.role != admin_role or not admin_user.is_active:
            admin_user.role = admin_role
            admin_user.is_active = True
            db.session.commit()
        return

    admin_user = User(full_name="System Administrator", email=admin_email, role=admin_role, is_active=True)
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()
    app.logger.info("Default admin created", extra={"email": admin_email})


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if missing (PostgreSQL), or its parent directory (SQLite)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database:
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # Startup fails loudly later if the server is really unreachable.
            pass
        finally:
            engine.dispose()


def register_commands(app: Flask) -> None:
    from models import ROLE_NAMES, Complaint, User
    from routes.auth import grant_role
    from utils.change_feed import LiveComplaintView, diff_snapshots

    def _counts_line(view: LiveComplaintView) -> str:
        counts = view.counts
        return " ".join(f"{key}={value}" for key, value in counts.items())

    @app.cli.command("watch-complaints")
    @click.option("--interval", default=2.0, show_default=True, help="Seconds between polls.")
    @click.option("--once", is_flag=True, help="Print the current snapshot and exit.")
    def watch_complaints(interval, once):
        """Follow complaint inserts, updates and deletes as they land in the database."""
        previous = {c.id: c.to_dict() for c in Complaint.query.all()}
        db.session.rollback()
        view = LiveComplaintView(previous.values())
        click.echo(_counts_line(view))
        if once:
            return
        try:
            while True:
                time.sleep(interval)
                current = {c.id: c.to_dict() for c in Complaint.query.all()}
                db.session.rollback()
                changes = diff_snapshots(previous, current)
                for change in changes:
                    view.apply(change)
                    status = (change.record or change.previous or {}).get("status")
                    click.echo(f"{change.kind} {change.complaint_id} status={status}")
                if changes:
                    click.echo(_counts_line(view))
                previous = current
        except KeyboardInterrupt:
            click.echo("Stopped.")

    @app.cli.command("grant-role")
    @click.argument("email")
    @click.argument("role", type=click.Choice(ROLE_NAMES))
    def grant_role_command(email, role):
        """Give the user registered under EMAIL the ROLE."""
        user = User.query.filter_by(email=email.lower().strip()).first()
        if not user:
            raise click.ClickException(f"No user registered with {email}")
        grant_role(user, role)
        db.session.commit()
        app.logger.info("Role granted from CLI", extra={"user_id": user.id, "role": role})
        click.echo(f"{user.email} is now {role}")


def create_app(config_name: Optional[str] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    if not app.config.get("TESTING"):
        app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.instance_path, exist_ok=True)

    logger = init_logging(app)
    app.logger = logger

    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return _error("Authentication required", 401)

    from routes import auth_bp, complaints_bp, gov_bp, main_bp
    from utils.change_feed import register_change_tracking

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(complaints_bp)
    app.register_blueprint(gov_bp)

    register_error_handlers(app)
    register_commands(app)
    register_change_tracking(db.session)

    @app.before_request
    def _before_request() -> None:
        g.sanitized_args = sanitize_input(request.args)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # First run creates the schema; migrations take over once the app is deployed.
    with app.app_context():
        db.create_all()
        ensure_default_roles_and_admin(app)

    return app
