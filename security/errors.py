"""Error taxonomy of the authentication API and its JSON rendering."""
from flask import jsonify
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException


class SecurityError(Exception):
    kind = "SecurityError"
    status = 400
    default_message = "Request failed"

    def __init__(self, message=None, details=None, **extra):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details
        self.extra = extra

    def to_dict(self):
        body = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class InvalidCredentials(SecurityError):
    kind = "InvalidCredentials"
    status = 401
    default_message = "Invalid credentials"


class AccountDeactivated(SecurityError):
    kind = "AccountDeactivated"
    status = 403
    default_message = "Your account is deactivated. Contact your administrator."


class Forbidden(SecurityError):
    kind = "Forbidden"
    status = 403
    default_message = "Forbidden"


class RateLimited(SecurityError):
    kind = "RateLimited"
    status = 429
    default_message = "Too many requests, please try again later"


class SessionExpired(SecurityError):
    kind = "SessionExpired"
    status = 401
    default_message = "Session expired. Please login again."


class InvalidCode(SecurityError):
    kind = "InvalidCode"
    status = 401
    default_message = "Invalid verification code"


class ValidationError(SecurityError):
    kind = "ValidationError"
    status = 400
    default_message = "Invalid input"

    @classmethod
    def from_form(cls, form, message=None):
        details = [
            {"field": field, "message": msg}
            for field, messages in form.errors.items()
            for msg in messages
        ]
        return cls(message, details=details)


class NotFound(SecurityError):
    kind = "NotFound"
    status = 404
    default_message = "Not found"


# werkzeug status code -> taxonomy kind, for errors raised by Flask itself
_HTTP_KINDS = {400: "ValidationError", 401: "InvalidCredentials", 403: "Forbidden",
               404: "NotFound", 429: "RateLimited"}


def register_error_handlers(app):
    @app.errorhandler(SecurityError)
    def handle_security_error(error):
        return jsonify(error.to_dict()), error.status

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(error):
        body = {"error": RateLimited.default_message, "kind": RateLimited.kind, "limit": error.description}
        return jsonify(body), 429

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        kind = _HTTP_KINDS.get(error.code, "HTTPError")
        return jsonify({"error": error.description, "kind": kind}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        app.logger.exception("Unhandled error: %s", error)
        return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500
