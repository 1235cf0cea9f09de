"""Failure taxonomy shared by every payment path.

Only ``BillingError`` subclasses cross the route boundary; anything else is
an internal error and becomes a 500.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


class VerificationError(BillingError):
    status_code = 401


class NotFound(BillingError):
    status_code = 404


class NotCompleted(BillingError):
    status_code = 400


class InvalidRequest(BillingError):
    status_code = 400


class RegionMismatch(BillingError):
    status_code = 403


class Conflict(BillingError):
    status_code = 409


class GrantInProgress(Conflict):
    """Another request holds the claim on this transaction and has not finished."""

    retryable = True


class ProviderUnavailable(BillingError):
    status_code = 503
    retryable = True


class ConfigMissing(BillingError):
    status_code = 503

    def __init__(self, setting: str):
        super().__init__(f"Missing configuration: {setting}")
        self.setting = setting


class DatastoreError(BillingError):
    status_code = 500
    retryable = True


class ProfileSyncError(BillingError):
    """The grant is recorded but the derived profile write failed."""

    status_code = 500
    retryable = True


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request failed: %s",
        exc.message,
        extra={"path": request.url.path, "error_type": type(exc).__name__, **exc.context},
    )
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
