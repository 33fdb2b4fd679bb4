"""
Tezos Delegation Indexer - Error Handling

Exception taxonomy for the ingestion and query paths, plus the FastAPI
exception handlers that turn query-path failures into plain-text responses.

Propagation policy:
- NetworkError, DecodeError, StorageWriteError: recovered inside the
  ingestion worker (logged, never surfaced to API clients)
- StorageQueryError: surfaced to the HTTP caller as a 500
- StorageInitError, ShutdownTimeoutError: fatal to the process
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .middleware import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Taxonomy
# =============================================================================


class IndexerError(Exception):
    """Base exception for all indexer failures."""


class NetworkError(IndexerError):
    """Transport-level failure while fetching from the upstream feed."""


class DecodeError(IndexerError):
    """Upstream payload could not be decoded into delegation records."""


class StorageInitError(IndexerError):
    """Checkpoint store could not be opened or its schema created."""


class StorageWriteError(IndexerError):
    """A single record could not be written to the checkpoint store."""


class StorageQueryError(IndexerError):
    """A read against the checkpoint store failed."""


class ShutdownTimeoutError(IndexerError):
    """Graceful shutdown did not complete within its deadline."""


# =============================================================================
# Exception Handlers
# =============================================================================


async def storage_query_exception_handler(
    request: Request, exc: StorageQueryError
) -> PlainTextResponse:
    """Return a plain-text 500 for failed store reads."""
    logger.error(
        f"Storage query failed on {request.method} {request.url.path}: {exc}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "status_code": 500,
        },
    )
    return PlainTextResponse(
        f"Failed to query delegations: {exc}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> PlainTextResponse:
    """Render HTTP exceptions as plain text, keeping any headers they carry."""
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={"request_id": get_request_id(), "path": request.url.path},
        )
    return PlainTextResponse(
        str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """
    Catch-all handler for unhandled exceptions.

    Logs the full traceback but returns a generic message to the client.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
        exc_info=True,
    )
    return PlainTextResponse(
        "Internal server error",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_error_handlers(app: FastAPI) -> None:
    """
    Register all error handlers with the FastAPI app.

    Call this in create_app() after creating the FastAPI instance.
    """
    app.add_exception_handler(StorageQueryError, storage_query_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.debug("Error handlers registered")
