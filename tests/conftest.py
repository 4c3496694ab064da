"""Shared fixtures: a throwaway SQLite store per test and seeding helpers."""

from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from newsdigest.core.db import build_engine, build_session_factory, create_all
from newsdigest.core.ids import EntryId, FeedId
from newsdigest.core.repositories import insert_entry_if_new, insert_field_with_text, upsert_feed

DAY = date(2024, 5, 1)
NOON = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class StoreHelper:
    """Seed and count rows without going through the pipeline stages."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def feed(self, url: str = "https://a.example/rss", title: str = "Feed A") -> FeedId:
        async with self.session_factory() as session, session.begin():
            row = await upsert_feed(session, title=title, url=url, kind="rss", lang="sv")
        return FeedId(row.id)

    async def entry(self, feed_id: FeedId, link: str, fields: dict, published_at=NOON) -> EntryId:
        """`fields` maps (kind, lang) to text."""
        async with self.session_factory() as session, session.begin():
            _, entry = await insert_entry_if_new(session, feed_id, link, published_at)
            for (kind, lang), text in fields.items():
                await insert_field_with_text(session, entry.id, kind, lang, text)
        return EntryId(entry.id)

    async def count(self, model, *where) -> int:
        async with self.session_factory() as session:
            stmt = select(func.count()).select_from(model)
            if where:
                stmt = stmt.where(*where)
            return (await session.execute(stmt)).scalar_one()

    async def all(self, model, *where):
        async with self.session_factory() as session:
            stmt = select(model)
            if where:
                stmt = stmt.where(*where)
            return list((await session.execute(stmt)).scalars().all())


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'digest.sqlite3'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return StoreHelper(session_factory)


@pytest.fixture
def day():
    return DAY
