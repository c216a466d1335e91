"""
Domain errors for the records system.

Every error carries a machine-readable code, an HTTP status for the JSON API,
and a small details dict. `register_error_handlers` renders them as
{"ok": false, "error": <code>, "message": ..., **details}.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class BrgyError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message, **self.details}


class ValidationError(BrgyError):
    """Missing or malformed input. Raised before any mutation."""

    code = "validation_error"
    status_code = 422

    def __init__(self, message: str, *, field: str | None = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


class NotFound(BrgyError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any, message: str | None = None):
        super().__init__(message or f"{entity} {entity_id} not found.", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class StateConflict(BrgyError):
    """The requested action is no longer available from the current status."""

    code = "state_conflict"
    status_code = 409

    def __init__(self, message: str = "This action is no longer available.", **details: Any):
        super().__init__(message, **details)


class AllocationConflict(BrgyError):
    """The sequence allocator lost every compare-and-swap attempt."""

    code = "allocation_conflict"
    status_code = 503

    def __init__(self, message: str = "Could not allocate a document number; please retry.", **details: Any):
        super().__init__(message, **details)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(BrgyError)
    def _domain_error(e: BrgyError):  # type: ignore[no-redef]
        if isinstance(e, AllocationConflict):
            app.logger.warning("Allocation conflict (request_id=%s): %s", getattr(g, "request_id", None), e.details)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        body = {"ok": False, "error": (e.name or "error").lower().replace(" ", "_"), "message": e.description}
        missing = getattr(g, "missing_permission", None)
        if e.code == 403 and missing:
            body["missing_permission"] = missing
        return jsonify(body), e.code or 500

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"ok": False, "error": "internal_error", "message": "Internal server error."}), 500
