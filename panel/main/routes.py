# /panel/main/routes.py
# Service info and health check.

from flask import current_app, jsonify
from sqlalchemy import text

from security import get_db
from . import main


@main.route("/")
def index():
    return jsonify({"service": current_app.config["SECURITY_ISSUER"], "status": "ok"})


@main.route("/health")
def health():
    session = get_db()
    try:
        session.execute(text("SELECT 1"))
        return jsonify({"status": "ok", "database": "ok"})
    except Exception:
        current_app.logger.exception("Health check failed")
        return jsonify({"status": "error", "database": "unavailable"}), 503
    finally:
        session.close()
