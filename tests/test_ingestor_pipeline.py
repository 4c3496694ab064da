"""Tests for the ingestion stage."""

from typing import Dict, List

import pytest

from newsdigest.core.errors import FetchError, ParseError
from newsdigest.core.models import Entry, Feed, Field, TextValue
from newsdigest.ingestor.crawlers import CrawledEntry, Crawler, EntryDraft, FieldValue
from newsdigest.ingestor.feeds import FeedDescriptor
from newsdigest.ingestor.pipeline import IngestionStage

from conftest import NOON


class FakeCrawler(Crawler):
    """Returns canned entries per feed URL; an exception instance is raised instead."""

    def __init__(self, responses: Dict[str, object]):
        self.responses = responses
        self.calls: List[str] = []

    async def crawl(self, feed: FeedDescriptor) -> List[CrawledEntry]:
        self.calls.append(feed.url_str)
        response = self.responses[feed.url_str]
        if isinstance(response, Exception):
            raise response
        return response


def crawled(link: str, **texts) -> CrawledEntry:
    return CrawledEntry(
        entry=EntryDraft(link=link, published_at=NOON),
        fields=[FieldValue(kind, "sv", text) for kind, text in texts.items()],
    )


def feed(name: str, active: bool = True) -> FeedDescriptor:
    return FeedDescriptor(title=name, url=f"https://{name}.example/rss", lang="sv", active=active)


class TestIngestionStage:

    @pytest.mark.asyncio
    async def test_identical_text_across_feeds_stored_once(self, session_factory, store):
        feeds = [feed("x"), feed("y")]
        crawler = FakeCrawler({
            "https://x.example/rss": [crawled("https://x.example/1", description="Samma text om branden")],
            "https://y.example/rss": [crawled("https://y.example/1", description="Samma text om branden")],
        })

        stats = await IngestionStage(session_factory, {"rss": crawler}).run(feeds)

        assert stats.entries_inserted == 2
        assert stats.fields_inserted == 2
        assert stats.text_values_inserted == 1
        assert await store.count(Field) == 2
        assert await store.count(TextValue) == 1

    @pytest.mark.asyncio
    async def test_parse_error_does_not_block_other_feeds(self, session_factory, store):
        feeds = [feed("x"), feed("y"), feed("z")]
        crawler = FakeCrawler({
            "https://x.example/rss": ParseError("https://x.example/rss", "broken xml"),
            "https://y.example/rss": [crawled("https://y.example/1", title="Y nyhet")],
            "https://z.example/rss": [crawled("https://z.example/1", title="Z nyhet")],
        })

        stats = await IngestionStage(session_factory, {"rss": crawler}).run(feeds)

        assert stats.feeds_failed == 1
        assert stats.feeds_ok == 2
        assert len(stats.errors) == 1
        links = sorted(e.link for e in await store.all(Entry))
        assert links == ["https://y.example/1", "https://z.example/1"]

    @pytest.mark.asyncio
    async def test_fetch_error_degrades_feed(self, session_factory, store):
        crawler = FakeCrawler({
            "https://x.example/rss": FetchError("https://x.example/rss", "timeout"),
        })

        stats = await IngestionStage(session_factory, {"rss": crawler}).run([feed("x")])

        assert stats.feeds_failed == 1
        assert await store.count(Entry) == 0
        assert await store.count(Feed) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_aborts(self, session_factory):
        crawler = FakeCrawler({
            "https://x.example/rss": RuntimeError("bug"),
            "https://y.example/rss": [crawled("https://y.example/1", title="Y")],
        })

        with pytest.raises(RuntimeError):
            await IngestionStage(session_factory, {"rss": crawler}).run([feed("x"), feed("y")])

    @pytest.mark.asyncio
    async def test_known_entry_fields_not_reprocessed(self, session_factory, store):
        first = FakeCrawler({"https://x.example/rss": [crawled("https://x.example/1", title="Original")]})
        second = FakeCrawler({"https://x.example/rss": [crawled("https://x.example/1", title="Edited")]})

        await IngestionStage(session_factory, {"rss": first}).run([feed("x")])
        stats = await IngestionStage(session_factory, {"rss": second}).run([feed("x")])

        assert stats.entries_existing == 1
        assert stats.entries_inserted == 0
        assert [v.text for v in await store.all(TextValue)] == ["Original"]

    @pytest.mark.asyncio
    async def test_inactive_feeds_registered_not_crawled(self, session_factory, store):
        crawler = FakeCrawler({"https://x.example/rss": []})

        await IngestionStage(session_factory, {"rss": crawler}).run([feed("x"), feed("off", active=False)])

        assert crawler.calls == ["https://x.example/rss"]
        assert await store.count(Feed) == 2
