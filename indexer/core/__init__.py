"""
Tezos Delegation Indexer - Core Module

Error taxonomy, structured logging and HTTP middleware shared by the API and
the ingestion worker.
"""

from .errors import (
    DecodeError,
    IndexerError,
    NetworkError,
    ShutdownTimeoutError,
    StorageInitError,
    StorageQueryError,
    StorageWriteError,
    setup_error_handlers,
)
from .middleware import RequestLoggingMiddleware, get_request_id

__all__ = [
    # Errors
    "IndexerError",
    "NetworkError",
    "DecodeError",
    "StorageInitError",
    "StorageWriteError",
    "StorageQueryError",
    "ShutdownTimeoutError",
    "setup_error_handlers",
    # Middleware
    "RequestLoggingMiddleware",
    "get_request_id",
]
