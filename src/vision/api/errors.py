from __future__ import annotations

"""Translate domain failures into HTTP errors for request/response routes."""

from fastapi import HTTPException, status

from ..domain.errors import (
    BillingError,
    DuplicateUserError,
    FileNotReadyError,
    PersistenceError,
    PipelineStepError,
    ProviderError,
    UserNotFoundError,
)

HANDLED = (
    ProviderError,
    FileNotReadyError,
    PersistenceError,
    PipelineStepError,
    UserNotFoundError,
    DuplicateUserError,
    KeyError,
    ValueError,
)


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PipelineStepError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"step": exc.step, "message": exc.message},
        )
    if isinstance(exc, ProviderError):
        if exc.kind == "unavailable":
            return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
    if isinstance(exc, FileNotReadyError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    if isinstance(exc, BillingError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="The operation completed but its usage could not be recorded",
        )
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Storage is unavailable")
    if isinstance(exc, DuplicateUserError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (UserNotFoundError, KeyError)):
        message = exc.args[0] if exc.args else "Not found"
        if isinstance(exc, UserNotFoundError):
            message = str(exc)
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=message)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")
