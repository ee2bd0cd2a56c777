"""Tests for the scoped retrieval cache."""

from __future__ import annotations

import pytest

from prestrack.errors import VectorSearchError
from prestrack.retrieval import (
    MAX_SOURCE_CHARS,
    RetrievalCache,
    make_cache_key,
    patient_filter,
    to_sources,
)

from conftest import FakeGeneline, make_match


class TestCacheKey:
    def test_query_is_normalized(self):
        a = make_cache_key("default", "  Iron   TABLETS ", 5, None)
        b = make_cache_key("default", "iron tablets", 5, None)
        assert a == b

    def test_scope_filter_is_part_of_key(self):
        a = make_cache_key("default", "iron", 5, patient_filter("+23276000001"))
        b = make_cache_key("default", "iron", 5, patient_filter("+23276000002"))
        assert a != b

    def test_session_key_and_top_k_are_part_of_key(self):
        base = make_cache_key("default", "iron", 5, None, "s1")
        assert base != make_cache_key("default", "iron", 5, None, "s2")
        assert base != make_cache_key("default", "iron", 3, None, "s1")

    def test_patient_filter(self):
        assert patient_filter("+23276000001") == {"patientPhoneE164": "+23276000001"}
        assert patient_filter(None) is None


class TestToSources:
    def test_ranked_by_score_and_truncated_to_top_k(self):
        matches = [
            make_match("low", "a", 0.2),
            make_match("high", "b", 0.9),
            make_match("mid", "c", 0.5),
        ]
        sources = to_sources(matches, 2)
        assert [s.title for s in sources] == ["high", "mid"]

    def test_metadata_fallbacks(self):
        sources = to_sources(
            [{"score": 0.4, "metadata": {"filename": "anc.pdf", "content": "Folic acid", "url": "https://x"}}],
            5,
        )
        assert sources[0].title == "anc.pdf"
        assert sources[0].text == "Folic acid"
        assert sources[0].source_url == "https://x"

    def test_untitled_match_gets_position_title(self):
        sources = to_sources([{"score": 0.1, "metadata": {"text": "t"}}], 5)
        assert sources[0].title == "Match 1"

    def test_long_text_is_clipped(self):
        sources = to_sources([make_match("big", "x" * (MAX_SOURCE_CHARS + 50), 0.3)], 5)
        assert len(sources[0].text) == MAX_SOURCE_CHARS + 1

    def test_non_numeric_score_ranks_last(self):
        matches = [
            {"score": "n/a", "metadata": {"title": "odd"}},
            make_match("good", "b", 0.4),
            {"score": None, "metadata": "not a dict"},
        ]
        sources = to_sources(matches, 5)
        assert sources[0].title == "good"
        assert sources[1].score == 0.0
        assert sources[2].title == "Match 3"


class TestRetrievalCache:
    @pytest.mark.asyncio
    async def test_second_identical_search_is_served_from_cache(self):
        backend = FakeGeneline([make_match("ANC schedule", "Visit monthly", 0.8)])
        cache = RetrievalCache(backend, namespace="clinic")
        first = await cache.search("anc visits", scope_filter=None)
        second = await cache.search("ANC  visits", scope_filter=None)
        assert first == second
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_different_scopes_do_not_share_results(self):
        backend = FakeGeneline([make_match("Lab result", "Hb 11.2", 0.7)])
        cache = RetrievalCache(backend, namespace="clinic")
        await cache.search("my labs", scope_filter=patient_filter("+23276000001"))
        await cache.search("my labs", scope_filter=patient_filter("+23276000002"))
        assert len(backend.calls) == 2
        assert backend.calls[1]["filter"] == {"patientPhoneE164": "+23276000002"}

    @pytest.mark.asyncio
    async def test_backend_failure_yields_empty_and_is_not_cached(self):
        backend = FakeGeneline([make_match("ANC", "text", 0.8)])
        backend.error = VectorSearchError("503 from backend", status_code=503)
        cache = RetrievalCache(backend, namespace="clinic")
        assert await cache.search("anc", scope_filter=None) == []

        backend.error = None
        results = await cache.search("anc", scope_filter=None)
        assert [s.title for s in results] == ["ANC"]

    @pytest.mark.asyncio
    async def test_default_top_k_is_sent(self):
        backend = FakeGeneline()
        cache = RetrievalCache(backend, namespace="clinic", default_top_k=4)
        await cache.search("q", scope_filter=None)
        assert backend.calls[0]["top_k"] == 4
        assert backend.calls[0]["namespace"] == "clinic"

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_yields_empty(self):
        backend = FakeGeneline()
        backend.error = ValueError("Expecting value: line 1 column 1")
        cache = RetrievalCache(backend, namespace="clinic")
        assert await cache.search("anc", scope_filter=None) == []
