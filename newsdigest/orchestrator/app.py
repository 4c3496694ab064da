"""Digest service FastAPI application.

Hosts the interval scheduler and exposes read-only report queries plus
an optional manual run trigger.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from newsdigest.core.db import create_all, dispose_engine, get_session_factory
from newsdigest.core.hashing import is_fingerprint
from newsdigest.core.ids import FieldId, ReportGroupId, ReportId, TextValueId
from newsdigest.core.logging import get_logger, setup_logging
from newsdigest.core.repositories import (
    get_latest_report,
    get_report,
    get_text_value,
    list_digest_groups,
    list_entries_by_fingerprint,
    list_fields_by_fingerprint,
    list_group_entries,
    list_report_groups,
    list_reports_for_day,
)
from newsdigest.core.settings import Settings, get_settings
from newsdigest.ingestor.feeds import load_feeds
from newsdigest.orchestrator.cycle import DigestOrchestrator, build_orchestrator
from newsdigest.orchestrator.scheduler import create_scheduler

logger = get_logger(__name__)

SERVICE_NAME = "newsdigest"
VERSION = "0.1.0"


class ReportResponse(BaseModel):
    id: int
    created_at: datetime
    threshold: float
    min_points: int
    score: float
    rows: int
    dimensions: int
    field_kind: str
    lang: str


class ReportGroupResponse(BaseModel):
    id: int
    report_id: int
    representative_id: int
    member_ids: List[int]


class GroupEntryResponse(BaseModel):
    entry_id: int
    feed_id: int
    link: str
    published_at: datetime
    embedding_id: int
    is_representative: bool
    title: Optional[str] = None


class FieldRefResponse(BaseModel):
    id: int
    entry_id: int
    kind: str
    lang: str


class TextValueResponse(BaseModel):
    id: int
    fingerprint: str
    text: str
    entry_ids: List[int]
    fields: List[FieldRefResponse]


class DigestGroupResponse(BaseModel):
    group_id: int
    size: int
    representative_id: int
    entry_id: Optional[int] = None
    title: Optional[str] = None
    link: Optional[str] = None
    feed_title: Optional[str] = None


class DigestResponse(BaseModel):
    day: date
    report: ReportResponse
    groups: List[DigestGroupResponse]


class CycleRunResponse(BaseModel):
    cycle_id: str
    status: str
    day: Optional[str] = None
    report_id: Optional[int] = None
    clusters: int = 0
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    runtime_seconds: float = 0.0
    ingest: Optional[Dict[str, Any]] = None
    translation: Optional[Dict[str, Any]] = None
    embedding: Optional[Dict[str, Any]] = None


def _report_response(report) -> ReportResponse:
    return ReportResponse(
        id=report.id,
        created_at=report.created_at,
        threshold=report.threshold,
        min_points=report.min_points,
        score=report.score,
        rows=report.rows,
        dimensions=report.dimensions,
        field_kind=report.field_kind,
        lang=report.lang,
    )


async def get_session(request: Request):
    """Dependency to get a database session from the app's session factory."""
    async with request.app.state.session_factory() as session:
        yield session


def get_orchestrator(request: Request) -> DigestOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not started")
    return orchestrator


def check_manual_run_enabled(request: Request) -> bool:
    """Manual runs are only allowed when ALLOW_MANUAL_RUN is set."""
    if not request.app.state.settings.allow_manual_run:
        raise HTTPException(
            status_code=403,
            detail="Manual runs are disabled. Set ALLOW_MANUAL_RUN=true to enable."
        )
    return True


def create_app(
    settings: Optional[Settings] = None,
    session_factory=None,
    orchestrator: Optional[DigestOrchestrator] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Create the FastAPI application.

    Anything not injected is built from settings when the app starts:
    schema, feed list, orchestrator and scheduler.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings=settings)
        owns_engine = app.state.session_factory is None
        if owns_engine:
            await create_all()
            app.state.session_factory = get_session_factory()

        owns_orchestrator = app.state.orchestrator is None
        if owns_orchestrator:
            feeds = load_feeds(settings.feeds_config_path)
            app.state.orchestrator = build_orchestrator(settings, feeds, app.state.session_factory)

        scheduler = None
        if start_scheduler:
            scheduler = create_scheduler(
                app.state.orchestrator,
                settings.cycle_interval_minutes,
                run_at_startup=settings.run_at_startup,
            )
            scheduler.start()

        logger.info(f"{SERVICE_NAME} started")
        yield

        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if owns_orchestrator:
            await app.state.orchestrator.aclose()
        if owns_engine:
            await dispose_engine()

    app = FastAPI(
        title="newsdigest",
        version=VERSION,
        description="Daily digest of news stories clustered across outlets",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.orchestrator = orchestrator

    @app.get("/healthz")
    async def health_check(db: AsyncSession = Depends(get_session)):
        """Health check endpoint."""
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e), "timestamp": timestamp},
            )
        return {"status": "ok", "service": SERVICE_NAME, "version": VERSION, "timestamp": timestamp}

    @app.post("/run", response_model=CycleRunResponse)
    async def run_cycle(
        _enabled: bool = Depends(check_manual_run_enabled),
        orchestrator: DigestOrchestrator = Depends(get_orchestrator),
    ):
        """Run one digest cycle now. Returns status "skipped" if one is in flight."""
        report = await orchestrator.run_cycle()
        return CycleRunResponse(**report.as_dict())

    @app.get("/reports/latest", response_model=ReportResponse)
    async def latest_report(db: AsyncSession = Depends(get_session)):
        report = await get_latest_report(db)
        if report is None:
            raise HTTPException(status_code=404, detail="No report yet")
        return _report_response(report)

    @app.get("/reports/{report_id}", response_model=ReportResponse)
    async def report_detail(report_id: int, db: AsyncSession = Depends(get_session)):
        report = await get_report(db, ReportId(report_id))
        if report is None:
            raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
        return _report_response(report)

    @app.get("/reports/{report_id}/groups", response_model=List[ReportGroupResponse])
    async def report_groups(report_id: int, db: AsyncSession = Depends(get_session)):
        if await get_report(db, ReportId(report_id)) is None:
            raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
        groups = await list_report_groups(db, ReportId(report_id))
        return [
            ReportGroupResponse(
                id=g.id,
                report_id=g.report_id,
                representative_id=g.representative_id,
                member_ids=g.member_ids,
            )
            for g in groups
        ]

    @app.get("/groups/{group_id}/entries", response_model=List[GroupEntryResponse])
    async def group_entries(group_id: int, db: AsyncSession = Depends(get_session)):
        """Entries of a group with their display language title, representative first."""
        report_settings = app.state.settings
        entries = await list_group_entries(
            db,
            ReportGroupId(group_id),
            embedding_kind=report_settings.embedding_field_kind,
            embedding_lang=report_settings.embedding_lang,
            display_kind=report_settings.display_field_kind,
            display_lang=report_settings.target_lang,
        )
        entries.sort(key=lambda e: (not e.is_representative, e.entry_id))
        return [GroupEntryResponse(**vars(e)) for e in entries]

    @app.get("/digest/{day}", response_model=DigestResponse)
    async def day_digest(day: date, db: AsyncSession = Depends(get_session)):
        """The day's latest report as stories ranked by size, each shown by its representative."""
        reports = await list_reports_for_day(db, day)
        if not reports:
            raise HTTPException(status_code=404, detail=f"No report for {day.isoformat()}")
        report = reports[-1]

        report_settings = app.state.settings
        groups = await list_digest_groups(
            db,
            ReportId(report.id),
            embedding_kind=report.field_kind,
            embedding_lang=report.lang,
            display_kind=report_settings.display_field_kind,
            display_lang=report_settings.target_lang,
        )
        return DigestResponse(
            day=day,
            report=_report_response(report),
            groups=[DigestGroupResponse(**vars(g)) for g in groups],
        )

    @app.get("/text/{fingerprint}", response_model=TextValueResponse)
    async def text_value(fingerprint: str, db: AsyncSession = Depends(get_session)):
        if not is_fingerprint(fingerprint):
            raise HTTPException(status_code=422, detail=f"Not a fingerprint: {fingerprint!r}")
        value = await get_text_value(db, fingerprint)
        if value is None:
            raise HTTPException(status_code=404, detail=f"No text for fingerprint {fingerprint}")
        entries = await list_entries_by_fingerprint(db, fingerprint)
        fields = await list_fields_by_fingerprint(db, fingerprint)
        return TextValueResponse(
            id=TextValueId(value.id),
            fingerprint=value.fingerprint,
            text=value.text,
            entry_ids=[e.id for e in entries],
            fields=[
                FieldRefResponse(id=FieldId(f.id), entry_id=f.entry_id, kind=f.kind, lang=f.lang)
                for f in fields
            ],
        )

    return app
