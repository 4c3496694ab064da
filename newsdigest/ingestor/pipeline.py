"""Ingestion stage.

Coordinates one crawl of every configured feed:
- Feed registry sync from the descriptor list
- Concurrent crawling, one task per feed, join-all
- Idempotent writes of entries, fields and text values

A feed that fails to fetch or parse contributes zero entries; any other
error aborts the stage after all feeds have finished.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsdigest.core.errors import FetchError, ParseError
from newsdigest.core.ids import FeedId
from newsdigest.core.logging import get_logger
from newsdigest.core.repositories import insert_entry_if_new, insert_field_with_text, upsert_feed
from newsdigest.ingestor.crawlers import CrawledEntry, Crawler
from newsdigest.ingestor.feeds import FeedDescriptor

logger = get_logger(__name__)


@dataclass
class IngestStats:
    feeds_ok: int = 0
    feeds_failed: int = 0
    entries_seen: int = 0
    entries_inserted: int = 0
    entries_existing: int = 0
    fields_inserted: int = 0
    text_values_inserted: int = 0
    errors: List[str] = field(default_factory=list)
    runtime_seconds: float = 0.0

    def as_dict(self) -> Dict:
        return asdict(self)


class IngestionStage:
    """Crawl feeds and write their entries through the content store."""

    def __init__(self, session_factory: async_sessionmaker, crawlers: Mapping[str, Crawler]):
        self.session_factory = session_factory
        self.crawlers = crawlers

    async def sync_feeds(self, feeds: Sequence[FeedDescriptor]) -> Dict[str, FeedId]:
        """Register descriptors in the feeds table; returns feed id by URL."""
        feed_ids: Dict[str, FeedId] = {}
        async with self.session_factory() as session, session.begin():
            for descriptor in feeds:
                row = await upsert_feed(
                    session,
                    title=descriptor.title,
                    url=descriptor.url_str,
                    kind=descriptor.kind,
                    lang=descriptor.lang,
                    active=descriptor.active,
                )
                feed_ids[descriptor.url_str] = FeedId(row.id)
        return feed_ids

    async def run(self, feeds: Sequence[FeedDescriptor]) -> IngestStats:
        """
        Crawl all active feeds concurrently and store new entries.

        Args:
            feeds: Feed descriptors of the deployment

        Returns:
            IngestStats with per feed and per entry counts
        """
        start_time = time.time()
        stats = IngestStats()

        active = [f for f in feeds if f.active]
        logger.info(f"Starting ingestion of {len(active)} feeds")
        feed_ids = await self.sync_feeds(feeds)

        results = await asyncio.gather(
            *(self._ingest_feed(feed, feed_ids[feed.url_str], stats) for feed in active),
            return_exceptions=True,
        )
        stats.runtime_seconds = round(time.time() - start_time, 2)

        for result in results:
            if isinstance(result, BaseException):
                raise result

        logger.info(
            f"Ingestion completed in {stats.runtime_seconds}s: "
            f"{stats.feeds_ok} feeds OK, {stats.feeds_failed} failed, "
            f"{stats.entries_inserted}/{stats.entries_seen} entries inserted",
            extra={"stats": stats.as_dict()},
        )
        return stats

    async def _ingest_feed(self, feed: FeedDescriptor, feed_id: FeedId, stats: IngestStats) -> None:
        crawler = self.crawlers[feed.kind]
        try:
            crawled = await crawler.crawl(feed)
        except (FetchError, ParseError) as e:
            stats.feeds_failed += 1
            stats.errors.append(f"{feed.title}: {e}")
            logger.warning(
                f"Skipping feed {feed.title} this cycle: {e}",
                extra={"feed_url": feed.url_str, "error_type": type(e).__name__},
            )
            return

        for item in crawled:
            await self._store_entry(feed_id, item, stats)

        stats.feeds_ok += 1
        logger.debug(f"Ingested feed {feed.title}: {len(crawled)} entries")

    async def _store_entry(self, feed_id: FeedId, item: CrawledEntry, stats: IngestStats) -> None:
        stats.entries_seen += 1
        async with self.session_factory() as session, session.begin():
            created, entry = await insert_entry_if_new(
                session, feed_id, item.entry.link, item.entry.published_at
            )
            if not created:
                # fields of a known entry were stored when it was first seen
                stats.entries_existing += 1
                return

            for value in item.fields:
                result = await insert_field_with_text(
                    session, entry.id, value.kind, value.lang, value.text
                )
                stats.fields_inserted += int(result.field_created)
                stats.text_values_inserted += int(result.text_created)

        stats.entries_inserted += 1
