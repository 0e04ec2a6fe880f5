import atexit
import datetime as dt
import os

from flask import current_app
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail

# Globals initialized on init_app
login_manager = LoginManager()
limiter = Limiter(get_remote_address, default_limits=[])
mail = Mail()

# SQLAlchemy (vanilla)
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session, declarative_base

Base = declarative_base()
engine = None
Session = None


def get_db():
    """Thread-scoped session; callers close it when done."""
    if Session is None:
        raise RuntimeError("Auth database not initialized, call security.init_app(app) first.")
    return Session()


def _database_uri(app):
    uri = app.config.get("SECURITY_DATABASE_URI")
    if uri:
        return uri
    # sqlite file in the instance folder unless configured
    os.makedirs(app.instance_path, exist_ok=True)
    uri = "sqlite:///" + os.path.join(app.instance_path, "security.sqlite3")
    app.config["SECURITY_DATABASE_URI"] = uri
    return uri


def init_db(app):
    global engine, Session
    uri = _database_uri(app)
    # requests may run on several threads against the same sqlite file
    connect_args = {"check_same_thread": False} if uri.startswith("sqlite") else {}

    if engine is not None:
        engine.dispose()
    engine = create_engine(uri, connect_args=connect_args, pool_pre_ping=True)
    Session = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))
    from . import models  # noqa: F401  registers the tables on Base
    Base.metadata.create_all(engine)


def pending_sessions():
    """The pending-session registry of the running app."""
    return current_app.extensions["pending_sessions"]


def _apply_defaults(app):
    app.config.setdefault("SECRET_KEY", os.environ.get("SECRET_KEY", "change-this-in-prod"))
    app.config.setdefault("SECURITY_ISSUER", os.environ.get("SECURITY_ISSUER", "Hosting Panel"))
    app.config.setdefault("FRONTEND_URL", os.environ.get("FRONTEND_URL", "http://localhost:3000"))

    app.config.setdefault("PASSWORD_HASH_METHOD", "pbkdf2:sha256:600000")
    app.config.setdefault("BACKUP_CODE_HASH_METHOD", "pbkdf2:sha256:10000")
    app.config.setdefault("SESSION_TOKEN_MAX_AGE", int(dt.timedelta(days=7).total_seconds()))
    app.config.setdefault("PASSWORD_RESET_TTL", 3600)

    # Pending 2FA sessions (seconds)
    app.config.setdefault("PENDING_VERIFY_TTL", 5 * 60)
    app.config.setdefault("PENDING_SETUP_TTL", 15 * 60)
    app.config.setdefault("PENDING_VERIFY_CEILING", 15 * 60)
    app.config.setdefault("PENDING_SETUP_CEILING", 30 * 60)
    app.config.setdefault("PENDING_MAX_EXTENSIONS", 5)
    app.config.setdefault("PENDING_SWEEP_INTERVAL", int(os.environ.get("PENDING_SWEEP_INTERVAL", 600)))

    # Rate limiting
    app.config.setdefault("RATELIMIT_ENABLED", True)
    app.config.setdefault("RATELIMIT_STORAGE_URI", os.environ.get("RATELIMIT_STORAGE_URI", "memory://"))
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Mail
    app.config.setdefault("MAIL_SERVER", os.environ.get("MAIL_SERVER", "localhost"))
    app.config.setdefault("MAIL_PORT", int(os.environ.get("MAIL_PORT", "587")))
    app.config.setdefault("MAIL_USE_TLS", os.environ.get("MAIL_USE_TLS", "true").lower() == "true")
    app.config.setdefault("MAIL_USERNAME", os.environ.get("MAIL_USERNAME"))
    app.config.setdefault("MAIL_PASSWORD", os.environ.get("MAIL_PASSWORD"))
    app.config.setdefault("MAIL_DEFAULT_SENDER", os.environ.get("MAIL_DEFAULT_SENDER", "no-reply@example.com"))
    # Deliver reset links off the request thread
    app.config.setdefault("MAIL_ASYNC", True)


def init_app(app):
    _apply_defaults(app)

    # Rate limiting
    limiter.init_app(app)

    # Mail
    mail.init_app(app)

    # DB
    init_db(app)

    # Pending 2FA sessions live in-process, one registry per app
    from .pending import PendingSessionRegistry, PendingSessionSweeper
    registry = PendingSessionRegistry(
        verify_ttl=app.config["PENDING_VERIFY_TTL"],
        setup_ttl=app.config["PENDING_SETUP_TTL"],
        verify_ceiling=app.config["PENDING_VERIFY_CEILING"],
        setup_ceiling=app.config["PENDING_SETUP_CEILING"],
        max_extensions=app.config["PENDING_MAX_EXTENSIONS"],
    )
    app.extensions["pending_sessions"] = registry
    interval = app.config["PENDING_SWEEP_INTERVAL"]
    if interval and not app.testing:
        sweeper = PendingSessionSweeper(registry, interval)
        sweeper.start()
        app.extensions["pending_sweeper"] = sweeper
        atexit.register(sweeper.stop)

    # Login (bearer tokens, no cookie session)
    login_manager.init_app(app)

    from .models import User
    from .tokens import load_session_token

    @login_manager.request_loader
    def load_user_from_request(request):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        payload = load_session_token(header[7:].strip())
        if not payload:
            return None
        session = get_db()
        try:
            user = session.get(User, int(payload["uid"]))
        finally:
            session.close()
        if not user or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        from .errors import InvalidCredentials
        raise InvalidCredentials("Unauthorized")

    @app.teardown_appcontext
    def remove_session(exc=None):
        if Session is not None:
            Session.remove()

    from .errors import register_error_handlers
    register_error_handlers(app)

    # Register blueprints
    from .routes import bp as security_bp
    from .account import bp as account_bp
    from .admin import bp as admin_bp
    app.register_blueprint(security_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(admin_bp)
