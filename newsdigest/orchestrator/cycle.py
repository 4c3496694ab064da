"""Digest cycle orchestrator.

One cycle runs the whole pipeline for the current UTC day:
1. Ingestion: crawl feeds, store new entries
2. Translation: source language texts of the clustered kind
3. Embedding: target language texts without vectors
4. Clustering: adaptive threshold search over today's embeddings
5. Report assembly: display translations, then the report itself

Cycles never overlap; a call made while one is running returns at once
with status "skipped".
"""

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsdigest.clusterer.engine import ClusteringEngine, ClusteringParams
from newsdigest.clusterer.report import ReportAssembler
from newsdigest.core.errors import CycleAbortedError
from newsdigest.core.ids import EmbeddingId
from newsdigest.core.logging import get_logger
from newsdigest.core.repositories import list_embeddings_for_day
from newsdigest.core.settings import Settings
from newsdigest.core.time import today_utc
from newsdigest.enricher.embedding import EmbeddingStage
from newsdigest.enricher.providers import Embedder, OpenAIProvider, Translator, build_providers
from newsdigest.enricher.translation import TranslationStage
from newsdigest.ingestor.crawlers import Crawler, build_crawlers
from newsdigest.ingestor.feeds import FeedDescriptor
from newsdigest.ingestor.fetcher import HttpFetcher
from newsdigest.ingestor.pipeline import IngestionStage

logger = get_logger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class PipelineConfig:
    """Everything a cycle needs that is fixed per deployment."""
    feeds: List[FeedDescriptor]
    clustering: ClusteringParams
    embedding_kind: str = "description"
    embedding_lang: str = "en"
    display_kind: str = "title"
    target_lang: str = "en"
    translation_concurrency: int = 4
    embedding_concurrency: int = 4
    normalize_embedding_text: bool = True
    cluster_workers: int = 1

    @classmethod
    def from_settings(cls, settings: Settings, feeds: List[FeedDescriptor]) -> "PipelineConfig":
        return cls(
            feeds=feeds,
            clustering=ClusteringParams(
                min_points=settings.min_points,
                threshold_lo=settings.threshold_lo,
                threshold_hi=settings.threshold_hi,
                samples=settings.threshold_samples,
                objective=settings.search_objective,
                early_stop=settings.search_early_stop,
            ),
            embedding_kind=settings.embedding_field_kind,
            embedding_lang=settings.embedding_lang,
            display_kind=settings.display_field_kind,
            target_lang=settings.target_lang,
            translation_concurrency=settings.translation_concurrency,
            embedding_concurrency=settings.embedding_concurrency,
            normalize_embedding_text=settings.normalize_embedding_text,
            cluster_workers=settings.cluster_workers,
        )


@dataclass
class CycleReport:
    """Outcome of one orchestrator cycle."""
    cycle_id: str
    status: str
    day: Optional[date] = None
    report_id: Optional[int] = None
    clusters: int = 0
    ingest: Optional[Dict[str, Any]] = None
    translation: Optional[Dict[str, Any]] = None
    embedding: Optional[Dict[str, Any]] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    runtime_seconds: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["day"] = self.day.isoformat() if self.day else None
        return data


class DigestOrchestrator:
    """Runs Ingestion, Translation, Embedding, Clustering and Report Assembly."""

    def __init__(
        self,
        config: PipelineConfig,
        session_factory: async_sessionmaker,
        crawlers: Mapping[str, Crawler],
        translator: Translator,
        embedder: Embedder,
        clock: Callable[[], date] = today_utc,
        closeables: Sequence[Any] = (),
    ):
        self.config = config
        self.session_factory = session_factory
        self.translator = translator
        self.embedder = embedder
        self.clock = clock
        self._closeables = list(closeables)
        self._lock = asyncio.Lock()
        self.last_report: Optional[CycleReport] = None

        self.ingestion = IngestionStage(session_factory, crawlers)
        self.translation = TranslationStage(
            session_factory,
            translator,
            target_lang=config.target_lang,
            concurrency=config.translation_concurrency,
        )
        self.embedding = EmbeddingStage(
            session_factory,
            embedder,
            concurrency=config.embedding_concurrency,
            normalize=config.normalize_embedding_text,
        )
        self.engine = ClusteringEngine(config.clustering, max_workers=config.cluster_workers)
        self.assembler = ReportAssembler(
            session_factory,
            self.translation,
            embedding_kind=config.embedding_kind,
            embedding_lang=config.embedding_lang,
            display_kind=config.display_kind,
        )

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self) -> CycleReport:
        """
        Run one full cycle.

        Never raises: a failing stage is logged once as a structured error
        and reported with status "failed". The previous report stays the
        latest one since nothing of the failed cycle's report was written.
        """
        cycle_id = uuid.uuid4().hex[:12]
        if self._lock.locked():
            logger.warning("Previous cycle still running, skipping tick", extra={"cycle_id": cycle_id})
            return CycleReport(cycle_id=cycle_id, status=STATUS_SKIPPED)

        async with self._lock:
            start_time = time.time()
            day = self.clock()
            report = CycleReport(cycle_id=cycle_id, status=STATUS_COMPLETED, day=day)
            logger.info(f"Starting cycle {cycle_id} for {day.isoformat()}", extra={"cycle_id": cycle_id})

            try:
                await self._run_stages(day, report)
            except CycleAbortedError as e:
                report.status = STATUS_FAILED
                report.failed_stage = e.stage
                report.error = f"{type(e.cause).__name__}: {e.cause}"
                logger.error(
                    f"Cycle {cycle_id} failed in {e.stage}: {report.error}",
                    extra={
                        "cycle_id": cycle_id,
                        "stage": e.stage,
                        "error_type": type(e.cause).__name__,
                        "error": str(e.cause),
                    },
                )

            report.runtime_seconds = round(time.time() - start_time, 2)
            if report.status == STATUS_COMPLETED:
                logger.info(
                    f"Cycle {cycle_id} completed in {report.runtime_seconds}s: "
                    f"report {report.report_id} with {report.clusters} clusters",
                    extra={"cycle_id": cycle_id, "report_id": report.report_id},
                )
            self.last_report = report
            return report

    async def _stage(self, name: str, coro):
        try:
            return await coro
        except Exception as e:
            raise CycleAbortedError(name, e) from e

    async def _run_stages(self, day: date, report: CycleReport) -> None:
        config = self.config

        ingest = await self._stage("ingestion", self.ingestion.run(config.feeds))
        report.ingest = ingest.as_dict()

        translation = await self._stage(
            "translation", self.translation.run(config.embedding_kind, day)
        )
        report.translation = translation.as_dict()

        embedding = await self._stage(
            "embedding", self.embedding.run(config.embedding_kind, config.embedding_lang, day)
        )
        report.embedding = embedding.as_dict()

        result = await self._stage("clustering", self._cluster(day))
        stored = await self._stage("report", self.assembler.assemble(result))

        report.report_id = stored.id
        report.clusters = len(result.clusters)

    async def _cluster(self, day: date):
        async with self.session_factory() as session:
            embeddings = await list_embeddings_for_day(
                session, self.config.embedding_kind, self.config.embedding_lang, day
            )
        items = [(EmbeddingId(e.id), e.vector) for e in embeddings]
        return await self.engine.run(items)

    async def aclose(self) -> None:
        """Release worker threads and HTTP clients."""
        self.engine.shutdown()
        for resource in self._closeables:
            await resource.aclose()


def build_orchestrator(
    settings: Settings,
    feeds: List[FeedDescriptor],
    session_factory: async_sessionmaker,
) -> DigestOrchestrator:
    """Wire an orchestrator with the HTTP fetcher, crawlers and providers from settings."""
    fetcher = HttpFetcher(
        user_agent=settings.user_agent,
        timeout=settings.fetch_timeout,
        max_retries=settings.fetch_max_retries,
        max_concurrent=settings.crawl_concurrency,
    )
    translator, embedder = build_providers(settings)
    closeables = [fetcher]
    if isinstance(translator, OpenAIProvider):
        closeables.append(translator)

    return DigestOrchestrator(
        PipelineConfig.from_settings(settings, feeds),
        session_factory,
        build_crawlers(fetcher, settings.source_lang),
        translator,
        embedder,
        closeables=closeables,
    )
