"""
Tests for the Retriever

Tests query parsing, ranking and cited answer synthesis.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from dossier.common.errors import RetrievalUnavailable
from dossier.common.schemas import SearchHit, SupportingChunk
from dossier.index import VectorStore
from dossier.retriever import (
    UNSYNTHESIZED,
    AnswerSynthesizer,
    Candidate,
    QueryIntent,
    QueryProcessor,
    Searcher,
)
from dossier.tests.conftest import FakeEmbeddingService, FakeLLMClient


class TestQueryProcessor:
    """Tests for QueryProcessor"""

    @pytest.fixture
    def processor(self):
        return QueryProcessor()

    def test_parse_expertise_query(self, processor):
        result = processor.parse("Who has distributed systems experience?")

        assert result.intent == QueryIntent.EXPERTISE
        assert result.cleaned == "who has distributed systems experience"
        assert "distributed systems" in result.phrases
        assert "distributed computing" in result.synonyms
        assert "who" not in result.keywords

    def test_parse_employment_query(self, processor):
        assert processor.parse("Who worked at Stripe?").intent == QueryIntent.EMPLOYMENT

    def test_parse_authorship_query(self, processor):
        assert processor.parse("Who wrote about consensus?").intent == QueryIntent.AUTHORSHIP

    def test_parse_general_query(self, processor):
        assert processor.parse("Rust").intent == QueryIntent.GENERAL

    def test_explicit_location_filter(self, processor):
        result = processor.parse("Rust engineers based in Berlin")

        assert result.filters == {"location": "berlin"}
        assert "berlin" not in result.keywords
        assert result.keywords == ["rust", "engineers"]

    def test_trailing_location_filter(self, processor):
        result = processor.parse("Golang developers in Berlin")
        assert result.filters == {"location": "berlin"}

    def test_skill_area_is_not_a_location(self, processor):
        result = processor.parse("Who has experience in Rust")
        assert result.filters == {}
        assert "rust" in result.phrases

    def test_caller_filters_override(self, processor):
        result = processor.parse("rust engineers based in berlin", {"location": "Paris "})
        assert result.filters["location"] == "paris"
        assert result.normalized == "rust engineers based in berlin | location=paris"

    def test_synonym_expansion(self, processor):
        result = processor.parse("k8s experts")
        assert "kubernetes experts" in result.expanded_queries
        assert "kubernetes" in result.match_terms

    @pytest.mark.asyncio
    async def test_llm_rewrite_adds_expansions(self):
        llm = FakeLLMClient(responses=['{"expansions": ["Container orchestration engineers"]}'])
        processor = QueryProcessor(llm_client=llm)

        parsed = await processor.rewrite(processor.parse("k8s experts"))

        assert "container orchestration engineers" in parsed.expanded_queries

    @pytest.mark.asyncio
    async def test_llm_rewrite_failure_keeps_query(self):
        processor = QueryProcessor(llm_client=FakeLLMClient(error=RuntimeError("down")))
        parsed = processor.parse("k8s experts")
        before = list(parsed.expanded_queries)

        assert (await processor.rewrite(parsed)).expanded_queries == before


def candidate(owner_id, similarity, matches=0, created_day=1):
    return Candidate(
        owner_id=owner_id,
        snapshot_version=1,
        snapshot_created_at=datetime(2024, 1, created_day, tzinfo=timezone.utc),
        best_similarity=similarity,
        chunks=[],
        matched_fields=[f"skill.s{i}" for i in range(matches)],
    )


class TestRanking:
    @pytest.fixture
    def searcher(self):
        return Searcher(FakeEmbeddingService(), VectorStore(), lambda owner_id, version: None)

    def test_score_formula(self, searcher):
        assert searcher.score(candidate("a", 0.5)) == pytest.approx(0.35)
        assert searcher.score(candidate("a", 0.5, matches=1)) == pytest.approx(0.35 + 0.15)
        assert searcher.score(candidate("a", 0.5, matches=2)) == pytest.approx(0.35 + 0.225)

    def test_structured_matches_lift_rank(self, searcher):
        hits = searcher.rank([candidate("semantic", 0.6), candidate("exact", 0.5, matches=1)])
        assert [h.owner_id for h in hits] == ["exact", "semantic"]

    def test_ties_prefer_recent_snapshot_then_owner_id(self, searcher):
        hits = searcher.rank([
            candidate("b", 0.5, created_day=1),
            candidate("c", 0.5, created_day=2),
            candidate("a", 0.5, created_day=1),
        ])
        assert [h.owner_id for h in hits] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_unavailable_embedding(self):
        searcher = Searcher(FakeEmbeddingService(available=False), VectorStore(), lambda o, v: None)
        with pytest.raises(RetrievalUnavailable):
            await searcher.search(QueryProcessor().parse("rust"))


def hit(owner_id, *chunk_ids):
    return SearchHit(
        owner_id=owner_id,
        score=0.5,
        cited_snapshot_version=1,
        supporting_chunks=[
            SupportingChunk(chunk_id=cid, text=f"text of {cid}", similarity=0.5) for cid in chunk_ids
        ],
    )


class TestAnswerSynthesizer:
    @pytest.mark.asyncio
    async def test_no_llm_returns_raw_chunks(self):
        result = await AnswerSynthesizer().synthesize("q", [hit("ada", "ada:v1:0", "ada:v1:1")])

        assert result.synthesized is False
        assert result.partial is False
        assert result.warnings[0] == UNSYNTHESIZED
        assert result.hits[0].answer_fragment == "text of ada:v1:0"
        assert result.cacheable is True

    @pytest.mark.asyncio
    async def test_no_hits(self):
        result = await AnswerSynthesizer(FakeLLMClient()).synthesize("q", [])
        assert result.is_empty
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_cited_fragments_are_kept(self):
        llm = FakeLLMClient(responses=[
            '{"answers": [{"owner_id": "ada", "fragment": "Ada built Raft.", "citations": ["ada:v1:1"]}]}'
        ])
        result = await AnswerSynthesizer(llm).synthesize("q", [hit("ada", "ada:v1:0", "ada:v1:1")])

        assert result.synthesized is True
        assert result.hits[0].answer_fragment == "Ada built Raft."
        assert [c.chunk_id for c in result.hits[0].supporting_chunks] == ["ada:v1:1"]

    @pytest.mark.asyncio
    async def test_foreign_citation_drops_fragment(self):
        llm = FakeLLMClient(responses=[
            '{"answers": ['
            '{"owner_id": "ada", "fragment": "Ada knows Go.", "citations": ["bob:v1:0"]},'
            '{"owner_id": "bob", "fragment": "Bob knows Go.", "citations": ["bob:v1:0"]}'
            ']}'
        ])
        hits = [hit("ada", "ada:v1:0"), hit("bob", "bob:v1:0")]

        result = await AnswerSynthesizer(llm).synthesize("q", hits)

        assert result.synthesized is True
        assert [h.owner_id for h in result.hits] == ["ada", "bob"]
        assert result.hits[0].answer_fragment == "text of ada:v1:0"
        assert result.hits[1].answer_fragment == "Bob knows Go."
        assert any("ada" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_uncited_answers_fall_back(self):
        llm = FakeLLMClient(responses=['{"answers": [{"owner_id": "ada", "fragment": "x", "citations": []}]}'])
        result = await AnswerSynthesizer(llm).synthesize("q", [hit("ada", "ada:v1:0")])

        assert result.synthesized is False
        assert UNSYNTHESIZED in result.warnings

    @pytest.mark.asyncio
    async def test_generation_error_is_not_cacheable(self):
        llm = FakeLLMClient(error=RuntimeError("503 overloaded"))
        result = await AnswerSynthesizer(llm).synthesize("q", [hit("ada", "ada:v1:0")])

        assert result.synthesized is False
        assert result.partial is False
        assert result.cacheable is False
        assert "answer generation failed: 503 overloaded" in result.warnings

    @pytest.mark.asyncio
    async def test_unusable_json_is_not_cacheable(self):
        llm = FakeLLMClient(responses=["Sorry, I cannot help with that."])
        result = await AnswerSynthesizer(llm).synthesize("q", [hit("ada", "ada:v1:0")])

        assert result.synthesized is False
        assert result.cacheable is False

    @pytest.mark.asyncio
    async def test_timeout_marks_partial(self):
        llm = FakeLLMClient(responses=["{}"], delay=1.0)
        result = await AnswerSynthesizer(llm).synthesize("q", [hit("ada", "ada:v1:0")], timeout=0.05)

        assert result.partial is True
        assert result.synthesized is False
        assert result.hits[0].answer_fragment == "text of ada:v1:0"

    @pytest.mark.asyncio
    async def test_no_budget_left(self):
        llm = FakeLLMClient(responses=["{}"])
        result = await AnswerSynthesizer(llm).synthesize("q", [hit("ada", "ada:v1:0")], timeout=0)

        assert result.partial is True
        assert llm.prompts == []
