"""Exceptions and error-detail extraction.

The backend reports failures in several shapes: a non-2xx response, or a 2xx
envelope carrying ``error`` / ``success: false`` at the top level or under
``data``. :func:`response_has_error` detects all of them and
:func:`extract_error_detail` turns any of them into one human-readable line.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx


class AgentSyncError(Exception):
    """Base class for errors raised by this package."""


class AgentApiError(AgentSyncError):
    """The agent API answered with a non-2xx status."""

    def __init__(self, status_code: int, body: Any = None, message: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"HTTP {status_code}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> AgentApiError:
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text or None
        return cls(response.status_code, body)


class HealthCheckError(AgentSyncError):
    """The health check reached the server but it reported itself unhealthy."""


# ---------------------------------------------------------------------------
# Envelope inspection
# ---------------------------------------------------------------------------

def response_has_error(response: Any) -> bool:
    """True when a 2xx response body still signals failure."""
    if not isinstance(response, dict):
        return False
    data = response.get("data")
    data = data if isinstance(data, dict) else {}
    return bool(
        response.get("error")
        or data.get("error")
        or response.get("success") is False
        or data.get("success") is False
    )


def _messages(items: list[Any]) -> str | None:
    found = []
    for item in items:
        if isinstance(item, str):
            found.append(item)
        elif isinstance(item, dict) and isinstance(item.get("message"), str):
            found.append(item["message"])
    found = [m for m in found if m]
    return "; ".join(found) if found else None


def _array_at(*path: str) -> Callable[[dict[str, Any]], str | None]:
    def strategy(obj: dict[str, Any]) -> str | None:
        value: Any = obj
        for key in path:
            if not isinstance(value, dict):
                return None
            value = value.get(key)
        return _messages(value) if isinstance(value, list) else None

    strategy.__name__ = "array_at_" + "_".join(path)
    return strategy


def _error_string(obj: dict[str, Any]) -> str | None:
    value = obj.get("error")
    return value if isinstance(value, str) and value else None


def _error_object_message(obj: dict[str, Any]) -> str | None:
    value = obj.get("error")
    if isinstance(value, dict) and isinstance(value.get("message"), str):
        return value["message"] or None
    return None


def _data_error_object_message(obj: dict[str, Any]) -> str | None:
    data = obj.get("data")
    return _error_object_message(data) if isinstance(data, dict) else None


def _top_level_message(obj: dict[str, Any]) -> str | None:
    value = obj.get("message")
    return value if isinstance(value, str) and value else None


# Tried in order; the first strategy that finds something wins.
EXTRACTION_STRATEGIES: tuple[Callable[[dict[str, Any]], str | None], ...] = (
    _array_at("error"),
    _array_at("errors"),
    _array_at("data", "error"),
    _array_at("data", "errors"),
    _error_string,
    _error_object_message,
    _data_error_object_message,
    _top_level_message,
)


def extract_error_detail(error: Any) -> str:
    """Best human-readable message for an exception or error payload, or ""."""
    if not error:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, AgentApiError):
        return extract_error_detail(error.body) or str(error)
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, dict):
        for strategy in EXTRACTION_STRATEGIES:
            detail = strategy(error)
            if detail:
                return detail
    return ""
