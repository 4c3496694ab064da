"""Feed crawlers.

A crawler turns one feed into a list of entries, each with its
extracted text fields tagged by kind and language. RSS/Atom feeds go
through feedparser; outlets without a usable feed are scraped from
their live page with CSS selectors.
"""

from abc import ABC, abstractmethod
from typing import Any, List, NamedTuple, Optional
from urllib.parse import urljoin, urlparse

import feedparser
from bs4 import BeautifulSoup

from newsdigest.core.errors import ParseError
from newsdigest.core.logging import get_logger
from newsdigest.core.text import clean_text, detect_lang
from newsdigest.core.time import now_utc, parse_datetime
from newsdigest.ingestor.feeds import FeedDescriptor
from newsdigest.ingestor.fetcher import HttpFetcher

logger = get_logger(__name__)

TITLE = "title"
DESCRIPTION = "description"
CONTENT = "content"
FIELD_KINDS = (TITLE, DESCRIPTION, CONTENT)


class FieldValue(NamedTuple):
    kind: str
    lang: str
    text: str


class EntryDraft(NamedTuple):
    link: str
    published_at: Any  # UTC datetime


class CrawledEntry(NamedTuple):
    entry: EntryDraft
    fields: List[FieldValue]


class Crawler(ABC):
    """Fetches and parses one feed."""

    @abstractmethod
    async def crawl(self, feed: FeedDescriptor) -> List[CrawledEntry]:
        """
        Crawl a feed.

        Raises:
            FetchError: network or HTTP failure
            ParseError: the feed as a whole is malformed
        """


def _get(obj, name: str, default=None):
    """Read a field from a feedparser dict or a plain object."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _absolute_link(link: Any, base_url: str) -> str:
    if not link:
        raise ParseError(base_url, "entry has no link")
    # multi-valued attributes such as class come back from BeautifulSoup as lists
    if not isinstance(link, str):
        raise ParseError(base_url, f"entry link is not a string: {link!r}")
    absolute = urljoin(base_url, link.strip())
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ParseError(base_url, f"invalid entry link {link!r}")
    return absolute


def build_entry(
    feed: FeedDescriptor,
    link: Optional[str],
    published: Any,
    texts: dict,
    default_lang: str,
) -> CrawledEntry:
    """
    Assemble a crawled entry from raw extracted values.

    Empty texts are skipped. The language is the feed's, else detected
    from the title and description.

    Raises:
        ParseError: if the entry has no usable link or no text at all
    """
    absolute = _absolute_link(link, feed.url_str)

    cleaned = {kind: clean_text(texts.get(kind) or "") for kind in FIELD_KINDS}
    cleaned = {kind: text for kind, text in cleaned.items() if text}
    if not cleaned:
        raise ParseError(feed.url_str, f"entry {absolute} has no text")

    lang = feed.lang or detect_lang(
        f"{cleaned.get(TITLE, '')} {cleaned.get(DESCRIPTION, '')}".strip(), default_lang
    )
    published_at = parse_datetime(published) or now_utc()

    return CrawledEntry(
        entry=EntryDraft(link=absolute, published_at=published_at),
        fields=[FieldValue(kind, lang, text) for kind, text in cleaned.items()],
    )


class RSSCrawler(Crawler):
    """RSS/Atom feeds parsed with feedparser."""

    def __init__(self, fetcher: HttpFetcher, default_lang: str):
        self.fetcher = fetcher
        self.default_lang = default_lang

    def parse(self, feed: FeedDescriptor, content: bytes) -> List[CrawledEntry]:
        parsed = feedparser.parse(content)
        if parsed.bozo and not parsed.entries:
            raise ParseError(feed.url_str, f"malformed feed: {parsed.get('bozo_exception')}")

        entries = []
        for raw in parsed.entries:
            content_items = _get(raw, "content") or []
            content_value = _get(content_items[0], "value") if content_items else None
            try:
                entries.append(
                    build_entry(
                        feed,
                        link=_get(raw, "link"),
                        published=_get(raw, "published") or _get(raw, "updated"),
                        texts={
                            TITLE: _get(raw, "title"),
                            DESCRIPTION: _get(raw, "summary") or _get(raw, "description"),
                            CONTENT: content_value,
                        },
                        default_lang=self.default_lang,
                    )
                )
            except ParseError as e:
                logger.warning(f"Dropping entry: {e}", extra={"feed_url": feed.url_str})
        return entries

    async def crawl(self, feed: FeedDescriptor) -> List[CrawledEntry]:
        result = await self.fetcher.fetch(feed.url_str)
        entries = self.parse(feed, result.content)
        logger.debug(f"Parsed {len(entries)} entries from {feed.title}")
        return entries


class HTMLCrawler(Crawler):
    """Live news pages scraped with the feed's CSS selectors."""

    def __init__(self, fetcher: HttpFetcher, default_lang: str):
        self.fetcher = fetcher
        self.default_lang = default_lang

    def parse(self, feed: FeedDescriptor, html: str) -> List[CrawledEntry]:
        selectors = feed.selectors
        if selectors is None:
            raise ParseError(feed.url_str, "no selectors configured")

        soup = BeautifulSoup(html, "html.parser")
        items = soup.select(selectors.item)
        if not items:
            raise ParseError(feed.url_str, f"no elements match {selectors.item!r}")

        entries = []
        for item in items:
            title = item.select_one(selectors.title)
            description = item.select_one(selectors.description) if selectors.description else None
            link_el = item.select_one(selectors.link) if selectors.link else item
            published = None
            if selectors.published:
                published_el = item.select_one(selectors.published)
                if published_el is not None:
                    published = (
                        published_el.get(selectors.published_attr)
                        if selectors.published_attr
                        else published_el.get_text(" ", strip=True)
                    )

            try:
                entries.append(
                    build_entry(
                        feed,
                        link=link_el.get(selectors.link_attr) if link_el is not None else None,
                        published=published,
                        texts={
                            TITLE: title.get_text(" ", strip=True) if title else None,
                            DESCRIPTION: description.get_text(" ", strip=True) if description else None,
                        },
                        default_lang=self.default_lang,
                    )
                )
            except ParseError as e:
                logger.warning(f"Dropping entry: {e}", extra={"feed_url": feed.url_str})
        return entries

    async def crawl(self, feed: FeedDescriptor) -> List[CrawledEntry]:
        result = await self.fetcher.fetch(feed.url_str)
        entries = self.parse(feed, result.text)
        logger.debug(f"Scraped {len(entries)} entries from {feed.title}")
        return entries


def build_crawlers(fetcher: HttpFetcher, default_lang: str) -> dict:
    """Crawler per feed kind."""
    return {
        "rss": RSSCrawler(fetcher, default_lang),
        "html": HTMLCrawler(fetcher, default_lang),
    }
