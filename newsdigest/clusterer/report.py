"""Report assembly.

Display titles of every clustered entry are translated first. The report
and all of its groups are then written in one transaction, so a report
is either complete or absent.
"""

from typing import Iterable, List

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsdigest.clusterer.engine import ClusteringResult
from newsdigest.core.ids import EmbeddingId
from newsdigest.core.logging import get_logger
from newsdigest.core.models import Field, Report
from newsdigest.core.repositories import (
    create_report,
    create_report_group,
    get_embeddings,
    list_entry_fields,
    list_entry_ids_for_fingerprints,
)
from newsdigest.enricher.translation import TranslationStage, TranslationStats

logger = get_logger(__name__)


class ReportAssembler:
    """Persist a clustering result as a Report with its ReportGroups."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        translation: TranslationStage,
        embedding_kind: str,
        embedding_lang: str,
        display_kind: str,
    ):
        self.session_factory = session_factory
        self.translation = translation
        self.embedding_kind = embedding_kind
        self.embedding_lang = embedding_lang
        self.display_kind = display_kind

    async def display_fields_for(self, embedding_ids: Iterable[EmbeddingId]) -> List[Field]:
        """Display kind fields, in any language, of every entry behind the given embeddings."""
        async with self.session_factory() as session:
            embeddings = await get_embeddings(session, embedding_ids)
            entry_ids_by_fp = await list_entry_ids_for_fingerprints(
                session,
                [e.fingerprint for e in embeddings.values()],
                self.embedding_kind,
                self.embedding_lang,
            )
            entry_ids = sorted({i for ids in entry_ids_by_fp.values() for i in ids})
            return await list_entry_fields(session, entry_ids, self.display_kind)

    async def ensure_display_translations(
        self, embedding_ids: Iterable[EmbeddingId]
    ) -> TranslationStats:
        """Lazily translate the display field of every entry behind the given embeddings."""
        fields = await self.display_fields_for(embedding_ids)
        return await self.translation.translate_fields(fields)

    async def assemble(self, result: ClusteringResult) -> Report:
        """
        Persist a clustering result.

        Raises:
            ConsistencyError: if a group references a missing embedding or
                a representative outside its members. Nothing is written.
        """
        member_ids = [i for cluster in result.clusters for i in cluster.member_ids]
        if member_ids:
            await self.ensure_display_translations(member_ids)

        async with self.session_factory() as session, session.begin():
            report = await create_report(
                session,
                threshold=result.threshold,
                min_points=result.min_points,
                score=result.score,
                rows=result.rows,
                dimensions=result.dimensions,
                field_kind=self.embedding_kind,
                lang=self.embedding_lang,
            )
            for cluster in result.clusters:
                await create_report_group(
                    session, report.id, cluster.member_ids, cluster.representative_id
                )

        logger.info(
            f"Stored report {report.id} with {len(result.clusters)} groups",
            extra={"report_id": report.id, "score": result.score, "rows": result.rows},
        )
        return report
