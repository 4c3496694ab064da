"""HTTP fetching for feeds and news pages with bounded concurrency and retries."""

import asyncio
from typing import NamedTuple, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from newsdigest.core.errors import FetchError
from newsdigest.core.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
RETRYABLE_ERRORS = (httpx.HTTPStatusError, httpx.TimeoutException, httpx.NetworkError)
MAX_RETRY_AFTER_SECONDS = 60


class FetchResult(NamedTuple):
    """Body of a successfully fetched URL."""
    url: str
    status_code: int
    content: bytes
    encoding: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")


class HttpFetcher:
    """Async GET with a concurrency bound and exponential backoff on transient failures."""

    def __init__(
        self,
        user_agent: str,
        timeout: float = 15.0,
        max_retries: int = 4,
        max_concurrent: int = 8,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_retries = max_retries
        self.backoff = backoff
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=50,
                keepalive_expiry=30.0
            ),
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get_once(self, url: str) -> httpx.Response:
        response = await self.client.get(url)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    wait_time = float(retry_after)
                    if 0 < wait_time <= MAX_RETRY_AFTER_SECONDS:
                        logger.info(f"Rate limited (429), waiting {wait_time}s as per Retry-After header")
                        await asyncio.sleep(wait_time)
                except ValueError:
                    logger.warning(f"Invalid Retry-After header value: {retry_after}")

        if response.status_code in RETRYABLE_STATUS:
            logger.warning(f"Retryable HTTP {response.status_code} for {url}")
            response.raise_for_status()

        return response

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a URL.

        Args:
            url: Absolute http(s) URL

        Returns:
            FetchResult with the raw body

        Raises:
            FetchError: on network failure, a non-2xx response, or once
                retries on transient errors are exhausted
        """
        async with self.semaphore:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_retries),
                    wait=wait_exponential(multiplier=self.backoff, min=self.backoff, max=8.0),
                    retry=retry_if_exception_type(RETRYABLE_ERRORS),
                    reraise=True,
                ):
                    with attempt:
                        response = await self._get_once(url)
            except httpx.HTTPStatusError as e:
                raise FetchError(url, f"HTTP {e.response.status_code}", e.response.status_code) from e
            except httpx.HTTPError as e:
                raise FetchError(url, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise FetchError(url, f"HTTP {response.status_code}", response.status_code)

        logger.debug(f"Fetched {url}: {len(response.content)} bytes")
        return FetchResult(
            url=str(response.url),
            status_code=response.status_code,
            content=response.content,
            encoding=response.encoding,
        )
