"""Embedding stage: vectors for target language texts that have none yet."""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Dict, List

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsdigest.core.errors import ApiError
from newsdigest.core.logging import get_logger
from newsdigest.core.models import TextValue
from newsdigest.core.repositories import insert_embedding_if_new, list_text_values_missing_embedding
from newsdigest.core.text import normalize_for_embedding
from newsdigest.enricher.providers import Embedder

logger = get_logger(__name__)


@dataclass
class EmbeddingStats:
    pending: int = 0
    embedded: int = 0
    existing: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return asdict(self)


class EmbeddingStage:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        embedder: Embedder,
        concurrency: int = 4,
        normalize: bool = True,
    ):
        self.session_factory = session_factory
        self.embedder = embedder
        self.normalize = normalize
        self.semaphore = asyncio.Semaphore(concurrency)

    async def run(self, kind: str, lang: str, day: date) -> EmbeddingStats:
        """
        Embed every distinct `kind`/`lang` text published on `day`.

        Pending work is one row per fingerprint, so texts shared by
        several entries are embedded once.
        """
        async with self.session_factory() as session:
            pending = await list_text_values_missing_embedding(session, kind, lang, day)

        stats = EmbeddingStats(pending=len(pending))
        logger.info(f"Found {len(pending)} {lang} {kind} texts without embeddings")

        results = await asyncio.gather(
            *(self._embed_one(value, stats) for value in pending),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        logger.info(
            f"Embedding done: {stats.embedded} embedded, {stats.failed} failed",
            extra={"stats": stats.as_dict()},
        )
        return stats

    async def _embed_one(self, value: TextValue, stats: EmbeddingStats) -> None:
        text = normalize_for_embedding(value.text) if self.normalize else value.text

        async with self.semaphore:
            try:
                vector = await self.embedder.embed(text)
                if not vector:
                    raise ApiError("embedder returned an empty vector")
            except ApiError as e:
                stats.failed += 1
                stats.errors.append(f"{value.fingerprint}: {e}")
                logger.warning(
                    f"Embedding failed, skipping text: {e}",
                    extra={"fingerprint": value.fingerprint, "status_code": e.status_code},
                )
                return

        async with self.session_factory() as session, session.begin():
            created, _ = await insert_embedding_if_new(session, value.fingerprint, vector)

        if created:
            stats.embedded += 1
        else:
            stats.existing += 1
