"""Async HTTP client for the Geneline-X embeddings search API.

Only the search endpoint is used by the core; ingestion belongs to the
dashboard.  Requests authenticate with the API key sent both as
``X-API-Key`` and as a Bearer token.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from prestrack.config import GENELINE_BASE_URL, GENELINE_X_API_KEY
from prestrack.errors import VectorSearchError
from prestrack.services.metrics import metrics

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0


class GenelineClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._api_key = api_key or GENELINE_X_API_KEY
        self._client = http_client or httpx.AsyncClient(
            base_url=(base_url or GENELINE_BASE_URL).rstrip("/"),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise VectorSearchError("GENELINE_X_API_KEY is not set")
        return {
            "X-API-Key": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def embeddings_search(
        self,
        query: str,
        *,
        namespace: str,
        top_k: int = 5,
        index_name: str | None = None,
        filter: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return the raw ``matches`` list (``{id, score, metadata}``)."""
        body: dict[str, Any] = {"query": query, "namespace": namespace, "topK": top_k}
        if index_name:
            body["indexName"] = index_name
        if filter:
            body["filter"] = filter

        async with metrics.track("geneline", "embeddings_search"):
            try:
                response = await self._client.post(
                    "/api/v1/embeddings/search", json=body, headers=self._headers(),
                )
            except httpx.HTTPError as exc:
                raise VectorSearchError(f"Embeddings search failed: {exc}") from exc
            if response.status_code >= 400:
                raise VectorSearchError(
                    f"Embeddings search failed: {response.status_code} {response.text}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
            except ValueError as exc:
                raise VectorSearchError(
                    f"Embeddings search returned non-JSON body: {response.text[:200]}",
                    status_code=response.status_code,
                ) from exc
            if not isinstance(data, dict):
                raise VectorSearchError(
                    f"Embeddings search returned {type(data).__name__}, expected an object",
                    status_code=response.status_code,
                )
            matches = data.get("matches") or []
            if not isinstance(matches, list):
                raise VectorSearchError(
                    "Embeddings search 'matches' is not a list", status_code=response.status_code,
                )
            return [m for m in matches if isinstance(m, dict)]

    async def aclose(self) -> None:
        await self._client.aclose()
