"""
Translation of paycore errors into HTTP responses
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import (
    AccountNotFound, DuplicateIdentifier, InsufficientFunds, InvalidCredential,
    InvalidStateTransition, PaycoreError, RateLimitExceeded, StorageUnavailable,
    TokenInvalid, TransactionNotFound, ValidationError
)
from ..logging_config import get_logger


logger = get_logger(__name__)

STATUS_CODES = [
    (ValidationError, 400),
    (InvalidCredential, 401),
    (TokenInvalid, 401),
    (AccountNotFound, 404),
    (TransactionNotFound, 404),
    (DuplicateIdentifier, 409),
    (InsufficientFunds, 409),
    (InvalidStateTransition, 409),
    (RateLimitExceeded, 429),
    (StorageUnavailable, 503),
]


def status_for(error: PaycoreError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def paycore_error_handler(request: Request, exc: PaycoreError) -> JSONResponse:
    status_code = status_for(exc)
    body = {"success": False, "code": exc.code, "message": exc.message}
    headers = {}
    
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    elif isinstance(exc, DuplicateIdentifier):
        body["namespace"] = exc.namespace
    elif isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(int(exc.retry_after) + 1)
    elif status_code >= 500:
        logger.error("Request to %s failed: %s", request.url.path, exc.message)
        body["message"] = "Server error"
    
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaycoreError, paycore_error_handler)
