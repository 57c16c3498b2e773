from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from leadboard.context import get_correlation_id
from leadboard.core.errors import CRMError, PartialFailure, PersistenceError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError, code: str | None = None) -> JSONResponse:
    details = exc.details
    if isinstance(exc, PartialFailure):
        details = {"completed": exc.completed, "failed": exc.failed, "reason": exc.details}
    elif isinstance(exc, PersistenceError):
        details = {"reason": exc.details, "recoverable": exc.recoverable}
    return error_response(
        request,
        status_code=exc.status_code,
        code=code or exc.code,
        message=exc.message,
        details=details,
    )
