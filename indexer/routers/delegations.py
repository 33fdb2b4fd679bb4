"""
Tezos Delegation Indexer - Delegations Router

Read-only query endpoint over the checkpoint store:

    GET /xtz/delegations            all delegations, newest first
    GET /xtz/delegations?year=2023  only delegations timestamped in 2023

No pagination and no authentication: the data is a public aggregate.
"""

import re
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..core.logging import get_logger
from ..db import CheckpointStore
from ..models import DelegationsResponse

logger = get_logger(__name__)

router = APIRouter(tags=["Delegations"])

_YEAR_PATTERN = re.compile(r"[0-9]{4}")


def get_store(request: Request) -> CheckpointStore:
    """Checkpoint store injected by the app factory."""
    return request.app.state.store


StoreDep = Annotated[CheckpointStore, Depends(get_store)]


def parse_year(raw: str | None) -> int | None:
    """
    Translate the ``year`` query parameter into a filter value.

    Missing or empty means no filter. Anything other than four digits is a
    400 for the caller.
    """
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip()
    if not _YEAR_PATTERN.fullmatch(value) or not 0 < int(value) < 9999:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid year {raw!r}: expected a four-digit year such as 2023",
        )
    return int(value)


@router.get("/xtz/delegations", response_model=DelegationsResponse)
def list_delegations(
    store: StoreDep,
    year: str | None = Query(default=None, description="Four-digit calendar year filter"),
) -> DelegationsResponse:
    """
    List stored delegations ordered by timestamp descending.

    Storage failures propagate as StorageQueryError and are rendered as a
    plain-text 500 by the registered exception handler.
    """
    year_filter = parse_year(year)
    records = store.query(year_filter)
    logger.debug("Returning %d delegations (year=%s)", len(records), year_filter)
    return DelegationsResponse(data=records)
