"""
Tezos Delegation Indexer - Health Router

GET /health reports the ingestion worker state, the current watermark and
the number of stored delegations. Returns 503 when the store cannot be read.
"""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.errors import StorageQueryError
from ..core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
def health(request: Request) -> JSONResponse:
    store = request.app.state.store
    worker = getattr(request.app.state, "worker", None)

    body: dict[str, Any] = {
        "status": "ok",
        "version": __version__,
        "worker": worker.snapshot() if worker is not None else None,
    }
    try:
        body["records"] = store.count()
    except StorageQueryError as exc:
        logger.warning(f"Health check could not read the checkpoint store: {exc}")
        body["status"] = "degraded"
        body["error"] = str(exc)
        return JSONResponse(content=body, status_code=503)

    body["watermark"] = store.latest_timestamp()
    return JSONResponse(content=body)
