"""
Application errors and their JSON rendering.

Service functions raise these; route handlers let them propagate and the
handler registered in `register_error_handlers` turns them into responses.
"""
from __future__ import annotations

from flask import Flask, current_app, g, jsonify


class ERROR_CODES:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    GONE = "GONE"
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(RuntimeError):
    code = ERROR_CODES.INTERNAL_ERROR
    status = 500

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None, details: object = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    code = ERROR_CODES.VALIDATION_ERROR
    status = 400


class UnauthorizedError(AppError):
    code = ERROR_CODES.UNAUTHENTICATED
    status = 401


class ForbiddenError(AppError):
    code = ERROR_CODES.FORBIDDEN
    status = 403


class NotFoundError(AppError):
    code = ERROR_CODES.NOT_FOUND
    status = 404


class ConflictError(AppError):
    code = ERROR_CODES.CONFLICT
    status = 409


class GoneError(AppError):
    code = ERROR_CODES.GONE
    status = 410


class RateLimitedError(AppError):
    code = ERROR_CODES.RATE_LIMITED
    status = 429


class AuditError(AppError):
    code = ERROR_CODES.INTERNAL_ERROR
    status = 500


def error_response(message: str, code: str, status: int):
    return jsonify({"error": message, "code": code}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def _app_error(e: AppError):  # type: ignore[no-redef]
        if e.status >= 500:
            current_app.logger.exception("AppError %s (request_id=%s)", e.code, getattr(g, "request_id", None))
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return error_response(getattr(e, "description", None) or "Bad request", ERROR_CODES.VALIDATION_ERROR, 400)

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_capability", None)
        if missing:
            current_app.logger.warning(
                "Forbidden: missing_capability=%s request_id=%s", missing, getattr(g, "request_id", None)
            )
        return error_response("Forbidden", ERROR_CODES.FORBIDDEN, 403)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return error_response("Not found", ERROR_CODES.NOT_FOUND, 404)

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return error_response("Method not allowed", ERROR_CODES.VALIDATION_ERROR, 405)

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return error_response("File too large.", ERROR_CODES.PAYLOAD_TOO_LARGE, 413)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        current_app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return error_response("Internal server error", ERROR_CODES.INTERNAL_ERROR, 500)
