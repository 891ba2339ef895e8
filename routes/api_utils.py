"""Shared helpers for API routes (error handling, logging and request bodies)."""

from __future__ import annotations

import json
from functools import wraps
from typing import Any, Callable, ParamSpec, TypeVar

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from errors import CatalogError, ValidationError

P = ParamSpec("P")
R = TypeVar("R")


def _collect_request_context() -> dict[str, Any]:
    context: dict[str, Any] = {
        "route": request.path,
        "endpoint": request.endpoint,
        "method": request.method,
        "view_args": dict(request.view_args or {}),
        "args": request.args.to_dict(flat=False),
    }

    json_payload = request.get_json(silent=True)
    if isinstance(json_payload, dict) and isinstance(json_payload.get("games"), list):
        # Catalog snapshots can hold thousands of entries; log the shape only.
        json_payload = {
            key: value for key, value in json_payload.items() if key != "games"
        } | {"games": f"<{len(json_payload['games'])} entries>"}
    if json_payload is not None:
        context["json"] = json_payload

    return context


def _serialize_context(context: dict[str, Any]) -> str:
    try:
        return json.dumps(context, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(context)


def _log_api_error(exc: Exception, *, status_code: int, handled: bool) -> None:
    context = _collect_request_context()
    context["status_code"] = status_code
    context_str = _serialize_context(context)
    if handled and status_code < 500:
        current_app.logger.warning(
            "Handled API error (%s): %s | context=%s", status_code, exc, context_str
        )
        return
    if handled:
        current_app.logger.error(
            "Handled API error (%s): %s | context=%s", status_code, exc, context_str,
            exc_info=exc,
        )
        return
    current_app.logger.exception(
        "Unhandled API error (%s): %s | context=%s", status_code, exc, context_str
    )


def handle_api_errors(func: Callable[P, R]) -> Callable[P, R]:
    """Decorator that centralizes API error handling and logging."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs):  # type: ignore[misc]
        try:
            return func(*args, **kwargs)
        except CatalogError as exc:
            status_code = exc.status_code
            _log_api_error(exc, status_code=status_code, handled=True)
            return jsonify(exc.to_dict()), status_code
        except HTTPException as exc:
            status_code = exc.code or 500
            message = exc.description or str(exc)
            api_error = CatalogError(message=message, status_code=status_code)
            _log_api_error(exc, status_code=status_code, handled=True)
            return jsonify(api_error.to_dict()), status_code
        except Exception as exc:  # pragma: no cover
            _log_api_error(exc, status_code=500, handled=False)
            return jsonify({"error": "Internal server error"}), 500

    return wrapper


def json_body(*, required: bool = True) -> dict[str, Any]:
    """Return the request's JSON object body or raise :class:`ValidationError`."""

    payload = request.get_json(silent=True)
    if payload is None:
        if required:
            raise ValidationError("Request body must be JSON")
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


__all__ = ["handle_api_errors", "json_body"]
