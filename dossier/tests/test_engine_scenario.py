"""
End-to-end scenarios through ProfileEngine.

Three people, three kinds of source, then questions about them. Network
backends are replaced by the hashing embedder and an unavailable LLM.
"""

import json

import httpx
import pytest

from dossier.common.config import DossierConfig
from dossier.common.errors import QueryTimeout
from dossier.common.llm_client import LLMClient
from dossier.engine import ProfileEngine
from dossier.index import chunk_snapshot
from dossier.ingest import SourceConnector
from dossier.retriever import UNSYNTHESIZED, AnswerSynthesizer
from dossier.tests.conftest import FakeEmbeddingService, FakeLLMClient

QUESTION = "Who has distributed systems experience?"


def make_engine(embedding, data_dir=""):
    config = DossierConfig()
    config.synthesis.data_dir = data_dir

    async def no_sleep(delay):
        return None

    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    connector = SourceConnector(client=client, sleep=no_sleep)
    return ProfileEngine(
        config,
        connector=connector,
        embedding_service=embedding,
        llm_client=LLMClient(provider="anthropic"),  # no key: unavailable
    )


@pytest.fixture
def sources(tmp_path):
    ada = tmp_path / "ada.json"
    ada.write_text(json.dumps({
        "basics": {"name": "Ada Lovelace", "label": "Staff Engineer", "location": {"city": "Berlin"}},
        "skills": [{"name": "Distributed Systems"}, {"name": "Rust"}],
    }))
    bob = tmp_path / "bob.md"
    bob.write_text("# Bob Smith\nFrontend Developer\nLocation: Paris\n\n## Skills\n- React, TypeScript\n")
    return {
        "ada": {"source_type": "resume", "location": str(ada)},
        "bob": {"source_type": "resume", "location": str(bob)},
        "cy": {"source_type": "endorsement", "content": "From: Dana\nCy is great at Python and Django."},
    }


async def ingest_all(engine, sources):
    reports = {}
    for owner_id, ref in sources.items():
        reports[owner_id] = await engine.add_source(owner_id, ref)
    return reports


class TestIngestion:
    @pytest.mark.asyncio
    async def test_add_sources_builds_versioned_profiles(self, embedding, sources):
        engine = make_engine(embedding)
        reports = await ingest_all(engine, sources)

        for owner_id, report in reports.items():
            assert report.ok, report.error
            assert report.status == "ok"
            assert report.snapshot_version == 1
            assert report.indexed_chunks > 0

        ada = engine.get_profile("ada")
        assert ada.fact_value("location") == "Berlin"
        assert ada.narrative_degraded is True
        assert "Ada Lovelace" in ada.narrative_text
        assert engine.vectors.committed_versions() == {"ada": 1, "bob": 1, "cy": 1}
        commit = engine.last_index_commit("ada")
        assert commit.version == 1
        assert not commit.partial

    @pytest.mark.asyncio
    async def test_unchanged_refresh_creates_no_version(self, embedding, sources):
        engine = make_engine(embedding)
        report = await engine.add_source("cy", sources["cy"])

        again = await engine.refresh_source("cy", report.source_id)

        assert again.status == "unchanged"
        assert again.snapshot_version == 1
        assert len(engine.history("cy")) == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_keeps_last_facts(self, embedding, sources, tmp_path):
        engine = make_engine(embedding)
        report = await engine.add_source("ada", sources["ada"])
        (tmp_path / "ada.json").unlink()

        failed = await engine.refresh_source("ada", report.source_id)

        assert failed.status == "failed"
        assert "file not found" in failed.error
        assert failed.snapshot_version == 1
        assert engine.get_profile("ada").fact_value("name") == "Ada Lovelace"
        assert engine.source_status("ada", report.source_id).is_failed

    @pytest.mark.asyncio
    async def test_unknown_source_refresh(self, embedding):
        engine = make_engine(embedding)
        with pytest.raises(KeyError):
            await engine.refresh_source("ada", "resume:nope")

    @pytest.mark.asyncio
    async def test_user_declared_fact_wins(self, embedding, sources):
        engine = make_engine(embedding)
        await engine.add_source("ada", sources["ada"])

        snapshot = await engine.edit_fact("ada", "location", "Lisbon")

        assert snapshot.version == 2
        assert snapshot.fact_value("location") == "Lisbon"
        assert snapshot.rejected_values("location") == ["Berlin"]
        assert engine.vectors.owner_index("ada").version == 2

    @pytest.mark.asyncio
    async def test_edit_fact_requires_value(self, embedding):
        engine = make_engine(embedding)
        with pytest.raises(ValueError):
            await engine.edit_fact("ada", "location", "  ")

    @pytest.mark.asyncio
    async def test_remove_source_retracts_facts(self, embedding, sources):
        engine = make_engine(embedding)
        report = await engine.add_source("ada", sources["ada"])

        snapshot = await engine.remove_source("ada", report.source_id)

        assert snapshot.version == 2
        assert snapshot.structured_facts == {}
        assert engine.list_sources("ada") == []

    @pytest.mark.asyncio
    async def test_rollback_reindexes(self, embedding, sources):
        engine = make_engine(embedding)
        await engine.add_source("ada", sources["ada"])
        await engine.edit_fact("ada", "headline", "Principal Engineer")

        snapshot = await engine.rollback("ada", 1)

        assert snapshot.version == 3
        assert snapshot.fact_value("headline") == "Staff Engineer"
        assert engine.vectors.owner_index("ada").version == 3

    @pytest.mark.asyncio
    async def test_restart_restores_profiles_and_index(self, embedding, sources, tmp_path):
        data_dir = str(tmp_path / "data")
        engine = make_engine(embedding, data_dir=data_dir)
        await engine.add_source("ada", sources["ada"])

        restarted = make_engine(FakeEmbeddingService(), data_dir=data_dir)
        await restarted.start()

        assert restarted.get_profile("ada").fact_value("name") == "Ada Lovelace"
        assert restarted.vectors.committed_versions() == {"ada": 1}
        snapshot = await restarted.edit_fact("ada", "headline", "CTO")
        assert snapshot.version == 2
        assert snapshot.fact_value("skill.rust") == "Rust"

    @pytest.mark.asyncio
    async def test_readding_unchanged_source_after_restart_keeps_version(self, embedding, sources, tmp_path):
        data_dir = str(tmp_path / "data")
        engine = make_engine(embedding, data_dir=data_dir)
        await engine.add_source("ada", sources["ada"])

        restarted = make_engine(FakeEmbeddingService(), data_dir=data_dir)
        await restarted.start()
        report = await restarted.add_source("ada", sources["ada"])

        assert report.ok, report.error
        assert report.snapshot_version == 1
        assert len(restarted.history("ada")) == 1

    @pytest.mark.asyncio
    async def test_saving_same_declared_value_twice_keeps_version(self, embedding, sources):
        engine = make_engine(embedding)
        await engine.add_source("ada", sources["ada"])

        first = await engine.edit_fact("ada", "location", "Lisbon")
        second = await engine.edit_fact("ada", "location", "Lisbon")

        assert first.version == second.version == 2
        assert second is first
        assert engine.vectors.committed_versions()["ada"] == 2

    @pytest.mark.asyncio
    async def test_partial_indexing_embeds_each_chunk_once(self, embedding, sources):
        engine = make_engine(embedding)
        embedding.fail_on = {"Skill:"}

        report = await engine.add_source("ada", sources["ada"])

        chunks = chunk_snapshot(engine.get_profile("ada"), engine.config.index.chunk_size)
        assert report.index_partial is True
        assert report.indexed_chunks == len(chunks) - 1
        assert embedding.calls == len(chunks)


class TestSearch:
    @pytest.mark.asyncio
    async def test_expertise_question_ranks_and_cites(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)

        result = await engine.search(QUESTION, caller_id="bob")

        assert result.hits[0].owner_id == "ada"
        assert result.synthesized is False
        assert UNSYNTHESIZED in result.warnings
        public = result.to_public()
        citations = public[0]["citations"]
        assert citations
        assert all(c["snapshot_version"] == 1 for c in citations)
        assert any("Distributed Systems" in c["text"] for c in citations)
        assert public[0]["answer_fragment"] == citations[0]["text"]

    @pytest.mark.asyncio
    async def test_repeated_query_hits_cache(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)

        first = await engine.search(QUESTION, caller_id="bob")
        second = await engine.search(QUESTION, caller_id="cy")

        assert second is first
        assert engine.cache.stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_profile_change_is_visible_to_next_query(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)
        before = await engine.search(QUESTION, caller_id="bob")

        await engine.edit_fact("cy", "skill.distributed_systems", "Distributed Systems")
        after = await engine.search(QUESTION, caller_id="bob")

        assert after is not before
        cy_hit = next(h for h in after.hits if h.owner_id == "cy")
        assert cy_hit.cited_snapshot_version == 2

    @pytest.mark.asyncio
    async def test_location_filter(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)

        result = await engine.search(QUESTION, caller_id="ada", filters={"location": "Paris"})

        assert [h.owner_id for h in result.hits] == ["bob"]

    @pytest.mark.asyncio
    async def test_retrieval_timeout(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)
        embedding.delay = 0.5

        with pytest.raises(QueryTimeout):
            await engine.search(QUESTION, caller_id="bob", timeout=0.05)

    @pytest.mark.asyncio
    async def test_answer_timeout_is_partial_and_not_cached(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)
        engine.answers = AnswerSynthesizer(FakeLLMClient(responses=["{}"], delay=1.0))
        engine.config.retriever.answer_timeout = 0.05

        first = await engine.search(QUESTION, caller_id="bob")
        second = await engine.search(QUESTION, caller_id="bob")

        assert first.partial and second.partial
        assert second is not first
        assert first.hits[0].owner_id == "ada"
        assert first.hits[0].answer_fragment

    @pytest.mark.asyncio
    async def test_failed_answer_generation_is_not_cached(self, embedding, sources):
        engine = make_engine(embedding)
        await ingest_all(engine, sources)
        engine.answers = AnswerSynthesizer(FakeLLMClient(error=RuntimeError("503 overloaded")))

        first = await engine.search(QUESTION, caller_id="bob")

        assert first.partial is False
        assert first.cacheable is False
        assert "answer generation failed: 503 overloaded" in first.warnings

        ada_chunk = first.hits[0].supporting_chunks[0].chunk_id
        engine.answers = AnswerSynthesizer(FakeLLMClient(responses=[json.dumps({
            "answers": [{"owner_id": "ada", "fragment": "Ada builds distributed systems.", "citations": [ada_chunk]}],
        })]))
        second = await engine.search(QUESTION, caller_id="bob")
        third = await engine.search(QUESTION, caller_id="bob")

        assert second is not first
        assert second.synthesized is True
        assert second.hits[0].answer_fragment == "Ada builds distributed systems."
        assert third is second

    @pytest.mark.asyncio
    async def test_completed_index_retry_refreshes_cached_results(self, embedding, sources):
        engine = make_engine(embedding)
        embedding.fail_on = {"Distributed"}
        report = await engine.add_source("ada", sources["ada"])
        assert report.index_partial is True

        first = await engine.search(QUESTION, caller_id="bob")
        ada_before = next(h for h in first.hits if h.owner_id == "ada")
        assert not any("Distributed" in c.text for c in ada_before.supporting_chunks)

        embedding.fail_on = set()
        retried = await engine.refresh_source("ada", report.source_id)
        assert retried.index_partial is False
        assert retried.snapshot_version == 1

        second = await engine.search(QUESTION, caller_id="bob")
        ada_after = next(h for h in second.hits if h.owner_id == "ada")
        assert second is not first
        assert any("Distributed Systems" in c.text for c in ada_after.supporting_chunks)
