"""Scoped, time-boxed retrieval over the clinic knowledge base.

Results are cached for four minutes under a key that includes the scope
filter, so two patients asking the same question never share results.
Retrieval is best-effort: backend failures yield an empty list.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from prestrack.config import GENELINE_X_INDEX, GENELINE_X_NAMESPACE, RAG_DEFAULT_TOPK
from prestrack.errors import VectorSearchError
from prestrack.models import RetrievedSource
from prestrack.services.cache import MISSING, TTLCache
from prestrack.services.geneline_client import GenelineClient

logger = logging.getLogger(__name__)

RAG_TTL_SECONDS = 4 * 60
MAX_SOURCE_CHARS = 4000
_MAX_QUERY_KEY_CHARS = 500


def patient_filter(phone_e164: str | None) -> dict[str, str] | None:
    """Vector-search filter restricting matches to one patient's documents."""
    return {"patientPhoneE164": phone_e164} if phone_e164 else None


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())[:_MAX_QUERY_KEY_CHARS]


def make_cache_key(
    namespace: str,
    query: str,
    top_k: int,
    scope_filter: dict[str, Any] | None,
    session_key: str | None = None,
) -> str:
    scope = ",".join(f"{k}={v}" for k, v in sorted((scope_filter or {}).items())) or "none"
    sess = session_key or "none"
    return f"sess={sess}|scope={scope}|ns={namespace}|k={top_k}|q={normalize_query(query)}"


class RetrievalCache:
    def __init__(
        self,
        client: GenelineClient,
        *,
        namespace: str | None = None,
        index_name: str | None = None,
        default_top_k: int | None = None,
        cache: TTLCache | None = None,
    ) -> None:
        self._client = client
        self._namespace = namespace or GENELINE_X_NAMESPACE
        self._index_name = index_name if index_name is not None else GENELINE_X_INDEX
        self._default_top_k = default_top_k or RAG_DEFAULT_TOPK
        self._cache = cache or TTLCache(ttl_seconds=RAG_TTL_SECONDS)

    async def search(
        self,
        query: str,
        *,
        scope_filter: dict[str, Any] | None,
        top_k: int | None = None,
        session_key: str | None = None,
    ) -> list[RetrievedSource]:
        k = int(top_k or self._default_top_k)
        key = make_cache_key(self._namespace, query, k, scope_filter, session_key)
        cached = self._cache.get(key, MISSING)
        if cached is not MISSING:
            logger.debug("RAG cache hit: %s", key)
            return cached

        try:
            matches = await self._client.embeddings_search(
                query,
                namespace=self._namespace,
                top_k=k,
                index_name=self._index_name,
                filter=scope_filter,
            )
        except VectorSearchError as exc:
            logger.error("RAG search failed (scope=%s): %s", scope_filter, exc)
            return []
        except Exception:
            logger.exception("Unexpected RAG search error (scope=%s)", scope_filter)
            return []

        results = to_sources(matches, k)
        self._cache.put(key, results)
        return results


def _score(match: dict[str, Any]) -> float:
    try:
        return float(match.get("score") or 0)
    except (TypeError, ValueError):
        return 0.0


def to_sources(matches: list[dict[str, Any]], top_k: int) -> list[RetrievedSource]:
    """Rank raw backend matches and map their metadata onto sources."""
    ranked = sorted(matches, key=_score, reverse=True)[:top_k]
    results: list[RetrievedSource] = []
    for i, match in enumerate(ranked):
        meta = match.get("metadata")
        if not isinstance(meta, dict):
            meta = {}
        title = meta.get("title") or meta.get("filename") or meta.get("name") or f"Match {i + 1}"
        text = str(meta.get("text") or meta.get("content") or meta.get("chunk") or "")
        if len(text) > MAX_SOURCE_CHARS:
            text = text[:MAX_SOURCE_CHARS] + "…"
        url = meta.get("sourceUrl") or meta.get("url") or meta.get("source") or None
        results.append(RetrievedSource(
            title=str(title),
            text=text,
            score=_score(match),
            source_url=str(url) if url else None,
        ))
    return results
