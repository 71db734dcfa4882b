from __future__ import annotations

from fastapi import HTTPException, status

from ..domain.errors import (
    AdvisorError,
    ConfigError,
    GenerationFailedError,
    GenerationTimeoutError,
    TransportError,
    TurnInProgressError,
)


def to_http_exception(exc: AdvisorError) -> HTTPException:
    """Translate a service-layer failure into the gateway's ``{detail}`` error."""
    if isinstance(exc, TransportError):
        code = exc.status_code if exc.status_code and exc.status_code >= 400 else status.HTTP_502_BAD_GATEWAY
        return HTTPException(status_code=code, detail=str(exc))
    if isinstance(exc, GenerationTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="生成超时，请重试")
    if isinstance(exc, GenerationFailedError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, TurnInProgressError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ConfigError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")
