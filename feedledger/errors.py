"""
Error taxonomy for the engagement ledger.

Services raise these; the API maps them to HTTP responses in one place
(see `install_error_handlers`). Workers use `is_transient` to decide between
retrying a job and dead-lettering it.
"""
import asyncio

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(LedgerError):
    """Target post, user, comment, share or follow request is missing."""

    status_code = 404


class Conflict(LedgerError):
    """Duplicate write. Likes and follows absorb duplicates instead of raising."""

    status_code = 409


class Unauthorized(LedgerError):
    """Missing or invalid acting user."""

    status_code = 401


class Forbidden(LedgerError):
    """Acting user may not touch this record (e.g. someone else's comment)."""

    status_code = 403


class ValidationError(LedgerError):
    """Malformed or disallowed input."""

    status_code = 422


class TransientStoreError(LedgerError):
    """Counter store or durable store temporarily unreachable."""

    status_code = 503


class QueueExhausted(LedgerError):
    """A sync job failed after its retry budget. Operational only."""


_TRANSIENT = (
    TransientStoreError,
    OperationalError,
    InterfaceError,
    RedisConnectionError,
    RedisTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)


def is_transient(exc: BaseException) -> bool:
    # IntegrityError, DataError and ProgrammingError are DBAPIErrors too; only a
    # dropped connection makes one of those worth retrying
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, _TRANSIENT)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
