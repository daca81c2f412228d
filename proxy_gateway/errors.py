"""
Per-request error taxonomy and the terminal error responder.

Every error raised after a request is admitted is a ``GatewayError`` carrying
the status code and a client-safe message. Anything else is treated as an
internal error. Clients only ever see ``{"error": "<message>"}``.
"""

import logging
from typing import Any, Mapping, Optional

from fastapi.responses import JSONResponse

from proxy_gateway.logging_config import log_fields
from proxy_gateway.models import ErrorBody

INTERNAL_ERROR_MESSAGE = "Internal server error"


class GatewayError(Exception):
    status_code = 500
    default_message = INTERNAL_ERROR_MESSAGE
    outcome = "internal_error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.default_message
        # detail is for logs only and never returned to the client
        self.detail = detail
        super().__init__(self.message)


class ModeResolutionError(GatewayError):
    status_code = 400
    default_message = "Missing or invalid target URL"
    outcome = "mode_resolution_error"


class ForwardingTimeout(GatewayError):
    status_code = 504
    default_message = "Gateway timeout"
    outcome = "forwarding_timeout"


class ForwardingTransportError(GatewayError):
    status_code = 502
    default_message = "Bad gateway"
    outcome = "forwarding_transport_error"


class ServiceDraining(GatewayError):
    status_code = 503
    default_message = "Server is shutting down"
    outcome = "rejected"


def error_response(
    status_code: int, message: str, headers: Optional[Mapping[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(error=message).model_dump(),
        headers=dict(headers) if headers else None,
    )


def _safe_str(obj: Any) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def format_exception_message(exception: BaseException) -> str:
    """Describe an exception, including the members of an exception group."""
    if exception is None:
        return "None"
    try:
        sub_exceptions = list(getattr(exception, "exceptions", None) or [])
    except Exception:
        sub_exceptions = []
    if not sub_exceptions:
        return _safe_str(exception)
    parts = "; ".join(
        f"{type(sub).__name__}: {_safe_str(sub)}" for sub in sub_exceptions
    )
    return f"{_safe_str(exception)} (Sub-exceptions: {parts})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
    **fields: Any,
) -> None:
    """
    Log an exception with its traceback and any sub-exceptions.

    Never raises: a broken exception object or a failing handler must not turn
    an error response into a crashed request.
    """
    try:
        message = f"{prefix} Exception: {format_exception_message(exception)}"
        logger.log(level, message, exc_info=exception, extra=log_fields(**fields))
    except Exception:
        try:
            logger.log(level, f"{prefix} Exception (logging details failed)")
        except Exception:
            pass
