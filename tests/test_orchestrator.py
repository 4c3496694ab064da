"""Tests for report assembly and the digest cycle."""

import asyncio
from typing import Dict, List

import pytest

from newsdigest.clusterer.engine import Cluster, ClusteringParams, ClusteringResult, MIN_SCORE
from newsdigest.clusterer.report import ReportAssembler
from newsdigest.core.errors import ConsistencyError
from newsdigest.core.hashing import fingerprint
from newsdigest.core.ids import EmbeddingId
from newsdigest.core.models import Embedding, Field, Report, ReportGroup
from newsdigest.core.repositories import insert_embedding_if_new
from newsdigest.enricher.providers import Embedder, Translator
from newsdigest.enricher.translation import TranslationStage
from newsdigest.ingestor.crawlers import CrawledEntry, Crawler, EntryDraft, FieldValue
from newsdigest.ingestor.feeds import FeedDescriptor
from newsdigest.orchestrator.cycle import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_SKIPPED,
    DigestOrchestrator,
    PipelineConfig,
)

from conftest import DAY, NOON

TOPICS = {
    "brand": [0.0, 0.0, 0.0],
    "val": [5.0, 5.0, 5.0],
    "fotboll": [10.0, 0.0, 0.0],
}


class SuffixTranslator(Translator):
    def __init__(self):
        self.calls: List[str] = []

    @property
    def provider_name(self) -> str:
        return "suffix"

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        self.calls.append(text)
        return f"{text} ({target_lang})"


class TopicEmbedder(Embedder):
    """Vectors near a fixed point per topic keyword, nudged by text length."""

    def __init__(self, dimensions: int = 3):
        self.dimensions = dimensions

    @property
    def provider_name(self) -> str:
        return "topic"

    async def embed(self, text: str) -> List[float]:
        for keyword, base in TOPICS.items():
            if keyword in text:
                vector = list(base) + [0.0] * (self.dimensions - len(base))
                vector[0] += (len(text) % 7) * 0.01
                return vector
        return [50.0] * self.dimensions


class StaticCrawler(Crawler):
    def __init__(self, entries: Dict[str, List[CrawledEntry]], gate: asyncio.Event = None):
        self.entries = entries
        self.gate = gate

    async def crawl(self, feed: FeedDescriptor) -> List[CrawledEntry]:
        if self.gate is not None:
            await self.gate.wait()
        return self.entries.get(feed.url_str, [])


def story(link: str, title: str, description: str) -> CrawledEntry:
    return CrawledEntry(
        entry=EntryDraft(link=link, published_at=NOON),
        fields=[
            FieldValue("title", "sv", title),
            FieldValue("description", "sv", description),
        ],
    )


FEEDS = [
    FeedDescriptor(title="A", url="https://a.example/rss", lang="sv"),
    FeedDescriptor(title="B", url="https://b.example/rss", lang="sv"),
]

STORIES = {
    "https://a.example/rss": [
        story("https://a.example/1", "Brand i hamnen", "Stor brand i hamnen"),
        story("https://a.example/2", "Valet klart", "Valet är avgjort"),
        story("https://a.example/3", "Derby", "Fotboll idag"),
    ],
    "https://b.example/rss": [
        story("https://b.example/1", "Hamnen brinner", "En brand i Göteborgs hamn"),
        story("https://b.example/2", "Valresultat", "Valet avgjordes igår"),
    ],
}


def make_config(**clustering) -> PipelineConfig:
    params = dict(min_points=2, threshold_lo=0.1, threshold_hi=1.0, samples=10)
    params.update(clustering)
    return PipelineConfig(feeds=FEEDS, clustering=ClusteringParams(**params))


def make_orchestrator(session_factory, crawler=None, embedder=None, translator=None, **clustering):
    return DigestOrchestrator(
        make_config(**clustering),
        session_factory,
        {"rss": crawler or StaticCrawler(STORIES)},
        translator or SuffixTranslator(),
        embedder or TopicEmbedder(),
        clock=lambda: DAY,
    )


class TestReportAssembler:

    async def _seed(self, session_factory, store):
        feed = await store.feed()
        for i, text in enumerate(["brand one", "brand two"], start=1):
            await store.entry(
                feed,
                f"https://a.example/{i}",
                {("description", "en"): text, ("title", "sv"): f"Rubrik {i}"},
            )
        ids = []
        async with session_factory() as session, session.begin():
            for text, vector in [("brand one", [0.0, 0.0]), ("brand two", [0.1, 0.0])]:
                _, row = await insert_embedding_if_new(session, fingerprint(text), vector)
                ids.append(EmbeddingId(row.id))
        return ids

    def _assembler(self, session_factory, translator):
        return ReportAssembler(
            session_factory,
            TranslationStage(session_factory, translator, "en"),
            embedding_kind="description",
            embedding_lang="en",
            display_kind="title",
        )

    @pytest.mark.asyncio
    async def test_assemble_translates_titles_and_stores_groups(self, session_factory, store):
        first, second = await self._seed(session_factory, store)
        translator = SuffixTranslator()
        result = ClusteringResult(
            clusters=[Cluster(member_ids=[first, second], representative_id=first)],
            threshold=0.5, min_points=2, score=0.9, rows=2, dimensions=2,
        )

        report = await self._assembler(session_factory, translator).assemble(result)

        assert report.score == 0.9
        assert await store.count(ReportGroup) == 1
        assert sorted(translator.calls) == ["Rubrik 1", "Rubrik 2"]
        titles = await store.all(Field, Field.kind == "title", Field.lang == "en")
        assert len(titles) == 2

    @pytest.mark.asyncio
    async def test_empty_result_stores_report_without_groups(self, session_factory, store):
        result = ClusteringResult(
            clusters=[], threshold=0.1, min_points=3, score=MIN_SCORE, rows=1, dimensions=2,
        )

        report = await self._assembler(session_factory, SuffixTranslator()).assemble(result)

        assert report.score == MIN_SCORE
        assert await store.count(Report) == 1
        assert await store.count(ReportGroup) == 0

    @pytest.mark.asyncio
    async def test_missing_embedding_leaves_no_report(self, session_factory, store):
        first, _ = await self._seed(session_factory, store)
        result = ClusteringResult(
            clusters=[
                Cluster(member_ids=[first], representative_id=first),
                Cluster(member_ids=[EmbeddingId(404)], representative_id=EmbeddingId(404)),
            ],
            threshold=0.5, min_points=1, score=0.5, rows=2, dimensions=2,
        )

        with pytest.raises(ConsistencyError):
            await self._assembler(session_factory, SuffixTranslator()).assemble(result)

        assert await store.count(Report) == 0
        assert await store.count(ReportGroup) == 0


class TestDigestOrchestrator:

    @pytest.mark.asyncio
    async def test_full_cycle(self, session_factory, store):
        orchestrator = make_orchestrator(session_factory)
        try:
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.aclose()

        assert report.status == STATUS_COMPLETED, report.error
        assert report.clusters == 2
        assert report.ingest["entries_inserted"] == 5
        assert report.embedding["embedded"] == 5

        [stored] = await store.all(Report)
        assert stored.id == report.report_id
        assert stored.rows == 5
        assert await store.count(ReportGroup) == 2

        # titles translated only for the clustered entries, not the lone football story
        english_titles = await store.all(Field, Field.kind == "title", Field.lang == "en")
        assert len(english_titles) == 4

    @pytest.mark.asyncio
    async def test_second_cycle_reuses_work(self, session_factory, store):
        translator = SuffixTranslator()
        orchestrator = make_orchestrator(session_factory, translator=translator)
        try:
            await orchestrator.run_cycle()
            calls_after_first = len(translator.calls)
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.aclose()

        assert report.status == STATUS_COMPLETED
        assert len(translator.calls) == calls_after_first
        assert report.ingest["entries_existing"] == 5
        assert await store.count(Embedding) == 5
        assert await store.count(Report) == 2

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, session_factory):
        gate = asyncio.Event()
        orchestrator = make_orchestrator(session_factory, crawler=StaticCrawler(STORIES, gate))
        try:
            first = asyncio.create_task(orchestrator.run_cycle())
            while not orchestrator.running:
                await asyncio.sleep(0)

            second = await orchestrator.run_cycle()
            gate.set()
            first_report = await first
        finally:
            await orchestrator.aclose()

        assert second.status == STATUS_SKIPPED
        assert first_report.status == STATUS_COMPLETED

    @pytest.mark.asyncio
    async def test_failed_cycle_leaves_previous_report(self, session_factory, store):
        good = make_orchestrator(session_factory)
        try:
            await good.run_cycle()
        finally:
            await good.aclose()

        class DriftingEmbedder(TopicEmbedder):
            async def embed(self, text: str) -> List[float]:
                vector = await super().embed(text)
                return vector + [0.0] if "fotboll" in text else vector

        extra = {"https://a.example/rss": STORIES["https://a.example/rss"] + [
            story("https://a.example/4", "Match", "Fotboll igen imorgon"),
        ]}
        bad = make_orchestrator(
            session_factory, crawler=StaticCrawler(extra), embedder=DriftingEmbedder()
        )
        try:
            report = await bad.run_cycle()
        finally:
            await bad.aclose()

        assert report.status == STATUS_FAILED
        assert report.failed_stage == "clustering"
        assert "DimensionMismatchError" in report.error
        assert await store.count(Report) == 1
