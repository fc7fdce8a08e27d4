from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from pydantic import ValidationError


@dataclass
class BrokerError(Exception):
    """Base broker error with a stable error code."""

    message: str
    code: str = "internal_error"
    detail: Any = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message


class BadRequestError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="bad_request", detail=detail)


class NotFoundError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="not_found", detail=detail)


class PolicyViolationError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="policy_violation", detail=detail)


class MissingCredentialsError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="missing_credentials", detail=detail)


class ExecutionTimeoutError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="timeout", detail=detail)


class OperationCancelledError(BrokerError):
    """Raised when a cancellation token fires.

    Kept apart from ordinary failures so orchestration can record work as
    cancelled rather than failed.
    """

    def __init__(self, message: str = "operation cancelled", *, detail: Any = None):
        super().__init__(message=message, code="cancelled", detail=detail)


class TransportError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="transport_error", detail=detail)


class ConfigurationError(BrokerError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="config_error", detail=detail)


def classify_exception(exc: Exception, *, default_code: str = "internal_error") -> Tuple[str, str, Any]:
    if isinstance(exc, BrokerError):
        return exc.code, exc.message, exc.detail
    if isinstance(exc, ValidationError):
        return "bad_request", "invalid arguments", exc.errors(include_url=False)
    if isinstance(exc, KeyError):
        return "not_found", str(exc), None
    if isinstance(exc, ValueError):
        return "bad_request", str(exc), None
    return default_code, str(exc), None


def build_error_payload(
    code: str,
    message: str,
    detail: Any = None,
    *,
    source: str = "unknown",
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": code, "message": message, "source": source}
    if detail is not None:
        payload["detail"] = detail
    return payload


def normalize_error(
    error: Any,
    *,
    default_code: str = "internal_error",
    source: str = "unknown",
) -> Dict[str, Any]:
    if error is None:
        return build_error_payload(default_code, "unknown error", source=source)

    if isinstance(error, Exception):
        code, message, detail = classify_exception(error, default_code=default_code)
        if code == default_code and not isinstance(error, BrokerError):
            # Unclassified exceptions may carry host or driver internals.
            return build_error_payload(code, "internal error", source=source)
        return build_error_payload(code, message, detail, source=source)

    return build_error_payload(default_code, str(error), source=source)
