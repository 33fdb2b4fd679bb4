"""
Tezos Delegation Indexer - TzKT Client

Thin async HTTP client for the TzKT delegations feed. Each call is one GET:

    GET <endpoint>?timestamp.gt=<watermark>&limit=<page_size>&sort.asc=timestamp

A second call pages through the records of a single timestamp:

    GET <endpoint>?timestamp.eq=<ts>&offset=<n>&limit=<page_size>&sort.asc=id

Retries are the ingestion worker's job; this client raises on the first
failure.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from . import __version__
from .config import DEFAULT_TZKT_DELEGATIONS_URL, TZKT_MAX_PAGE_SIZE
from .core.errors import DecodeError, NetworkError
from .core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class TzktClient:
    def __init__(
        self,
        endpoint: str = DEFAULT_TZKT_DELEGATIONS_URL,
        *,
        page_size: int = TZKT_MAX_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not 1 <= page_size <= TZKT_MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {TZKT_MAX_PAGE_SIZE}")
        self._endpoint = endpoint
        self._page_size = page_size
        headers = {
            "Accept": "application/json",
            "User-Agent": f"xtz-indexer/{__version__}",
        }
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "TzktClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - context helper
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def page_size(self) -> int:
        return self._page_size

    async def fetch_since(self, last_timestamp: str) -> list[dict[str, Any]]:
        """
        Fetch delegations strictly newer than ``last_timestamp``, oldest first.

        Raises:
            NetworkError: transport failure, timeout or non-2xx status
            DecodeError: body is not a JSON array of objects
        """
        payload = await self._get(
            {
                "timestamp.gt": last_timestamp,
                "limit": self._page_size,
                "sort.asc": "timestamp",
            }
        )
        logger.debug("Fetched %d delegations newer than %s", len(payload), last_timestamp)
        return payload

    async def fetch_at(self, timestamp: str, offset: int = 0) -> list[dict[str, Any]]:
        """
        Fetch one page of the delegations stamped exactly ``timestamp``.

        Ordered by operation id so consecutive offsets never overlap. Raises
        the same errors as fetch_since.
        """
        payload = await self._get(
            {
                "timestamp.eq": timestamp,
                "offset": offset,
                "limit": self._page_size,
                "sort.asc": "id",
            }
        )
        logger.debug("Fetched %d delegations at %s offset=%d", len(payload), timestamp, offset)
        return payload

    async def _get(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            response = await self._client.get(self._endpoint, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"TzKT returned HTTP {exc.response.status_code} for {self._endpoint}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Error fetching {self._endpoint}: {type(exc).__name__}: {exc}") from exc

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"TzKT response is not valid JSON: {exc}") from exc

        if not isinstance(payload, list):
            raise DecodeError(f"Expected a JSON array from TzKT, got {type(payload).__name__}")
        for index, item in enumerate(payload):
            if not isinstance(item, dict):
                raise DecodeError(
                    f"Expected objects in TzKT array, got {type(item).__name__} at index {index}"
                )
        return payload
