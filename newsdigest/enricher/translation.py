"""Translation stage.

Pending fields are grouped by the fingerprint of their source text, so a
string shared by several entries is translated once and the result is
fanned out to every entry as its own target language field pointing at
one TextValue. A translation stored by an earlier cycle for the same
source text is reused instead of calling the translator again.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsdigest.core.errors import ApiError
from newsdigest.core.logging import get_logger
from newsdigest.core.models import Field
from newsdigest.core.repositories import (
    find_existing_translation,
    find_field,
    insert_field_with_text,
    list_fields_missing_translation,
    require_text_value,
)
from newsdigest.enricher.providers import Translator

logger = get_logger(__name__)


@dataclass
class TranslationStats:
    pending_fields: int = 0
    distinct_texts: int = 0
    translated: int = 0
    reused: int = 0
    already_translated: int = 0
    fields_written: int = 0
    text_values_written: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return asdict(self)


class TranslationStage:
    """Produce target language fields for source language fields."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        translator: Translator,
        target_lang: str,
        concurrency: int = 4,
    ):
        self.session_factory = session_factory
        self.translator = translator
        self.target_lang = target_lang
        self.semaphore = asyncio.Semaphore(concurrency)

    async def run(self, kind: str, day: date, source_lang: Optional[str] = None) -> TranslationStats:
        """Translate every field of `kind` published on `day` that lacks a target sibling."""
        async with self.session_factory() as session:
            pending = await list_fields_missing_translation(
                session, kind, self.target_lang, day, source_lang=source_lang
            )
        logger.info(f"Found {len(pending)} {kind} fields without {self.target_lang} translation")
        return await self.translate_fields(pending)

    async def translate_fields(self, fields: Sequence[Field]) -> TranslationStats:
        """
        Translate a supplied list of fields.

        Fields that already have a target language sibling are left alone,
        so calling this twice is a no-op the second time.

        Raises:
            ConsistencyError: if a field points at a missing TextValue
        """
        stats = TranslationStats(pending_fields=len(fields))

        groups: Dict[Tuple[str, str, str], List[Field]] = {}
        for f in fields:
            if f.lang == self.target_lang:
                continue
            groups.setdefault((f.fingerprint, f.kind, f.lang), []).append(f)
        stats.distinct_texts = len(groups)

        results = await asyncio.gather(
            *(self._translate_group(key, members, stats) for key, members in groups.items()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        logger.info(
            f"Translation done: {stats.translated} translated, {stats.reused} reused, "
            f"{stats.fields_written} fields written, {stats.failed} failed",
            extra={"stats": stats.as_dict()},
        )
        return stats

    async def _translate_group(
        self, key: Tuple[str, str, str], fields: List[Field], stats: TranslationStats
    ) -> None:
        source_fingerprint, kind, source_lang = key

        async with self.semaphore:
            async with self.session_factory() as session:
                remaining = []
                for f in fields:
                    if await find_field(session, f.entry_id, kind, self.target_lang) is None:
                        remaining.append(f)
                stats.already_translated += len(fields) - len(remaining)
                if not remaining:
                    return

                source = await require_text_value(session, source_fingerprint)
                memo = await find_existing_translation(
                    session, source_fingerprint, kind, self.target_lang
                )
                translated = (await require_text_value(session, memo)).text if memo else None

            if translated is not None:
                stats.reused += 1
            else:
                try:
                    translated = await self.translator.translate(
                        source.text, source_lang, self.target_lang
                    )
                except ApiError as e:
                    stats.failed += len(remaining)
                    stats.errors.append(f"{source_fingerprint}: {e}")
                    logger.warning(
                        f"Translation failed, skipping {len(remaining)} fields: {e}",
                        extra={"fingerprint": source_fingerprint, "status_code": e.status_code},
                    )
                    return
                stats.translated += 1

            async with self.session_factory() as session, session.begin():
                for f in remaining:
                    result = await insert_field_with_text(
                        session, f.entry_id, kind, self.target_lang, translated
                    )
                    stats.fields_written += int(result.field_created)
                    stats.text_values_written += int(result.text_created)
