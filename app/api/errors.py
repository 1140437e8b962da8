from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.context import get_correlation_id


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
    actions: dict[str, str | None] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload: dict[str, Any] = asdict(
        ErrorEnvelope(
            code=code,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )
    )
    if actions is not None:
        payload["actions"] = actions
    return JSONResponse(status_code=status_code, content=payload, headers=headers)
