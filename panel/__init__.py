# /panel/__init__.py
# Application factory for the hosting panel API.

import logging
import os

from dotenv import load_dotenv
from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix

import security

# Load environment variables from .env
load_dotenv()


def create_app(config=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "change-this-in-prod")
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")
    # Honour X-Forwarded-For only behind a known reverse proxy
    app.config["TRUST_PROXY"] = os.getenv("TRUST_PROXY", "false").lower() == "true"
    if os.getenv("SECURITY_DATABASE_URI"):
        app.config["SECURITY_DATABASE_URI"] = os.getenv("SECURITY_DATABASE_URI")
    if config:
        app.config.update(config)

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(app.config["LOG_LEVEL"])
    logging.getLogger("security").setLevel(app.config["LOG_LEVEL"])

    if app.config["TRUST_PROXY"]:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    # Auth, 2FA, brute-force guard and their database
    security.init_app(app)

    # Register blueprints
    from .main import main as main_blueprint
    app.register_blueprint(main_blueprint)

    return app
