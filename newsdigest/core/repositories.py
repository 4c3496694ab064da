"""Repository layer for the content addressed store.

Every insert here is idempotent: "insert, ignore conflict, read back"
issued as one operation, so concurrent writers producing the same
natural key converge on one row without explicit locking.

Functions never commit. Callers own the transaction, which lets an
Entry and its Fields, or a Report and its groups, land together.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from sqlalchemy import and_, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from newsdigest.core.errors import ConsistencyError
from newsdigest.core.hashing import fingerprint as compute_fingerprint
from newsdigest.core.ids import EmbeddingId, EntryId, FeedId, ReportGroupId, ReportId
from newsdigest.core.logging import get_logger
from newsdigest.core.models import (
    Embedding, Entry, Feed, Field, Report, ReportGroup, ReportGroupEmbedding, TextValue
)
from newsdigest.core.time import day_bounds

logger = get_logger(__name__)


@dataclass
class FieldInsert:
    """Outcome of writing one Field together with its TextValue."""
    field: Field
    field_created: bool
    text_value: TextValue
    text_created: bool


@dataclass
class ReportGroupView:
    """Read model of one report group."""
    id: ReportGroupId
    report_id: ReportId
    representative_id: EmbeddingId
    member_ids: List[EmbeddingId] = field(default_factory=list)


@dataclass
class GroupEntryView:
    """One entry rendered as part of a report group."""
    entry_id: EntryId
    feed_id: FeedId
    link: str
    published_at: Any
    embedding_id: EmbeddingId
    is_representative: bool
    title: Optional[str]


def _dialect_insert(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ValueError(f"Unsupported database dialect: {dialect}")


async def _insert_if_absent(
    session: AsyncSession,
    model: Type,
    values: Dict[str, Any],
    key_columns: Sequence[str],
) -> Tuple[bool, Any]:
    """
    Insert a row unless its natural key already exists, then read it back.

    Args:
        session: Database session
        model: Mapped class
        values: Column values of the row
        key_columns: Columns of the unique constraint that identifies the row

    Returns:
        Tuple of (was_created, row)
    """
    insert = _dialect_insert(session)
    stmt = (
        insert(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(key_columns))
        .returning(model.id)
    )
    result = await session.execute(stmt)
    inserted_id = result.scalar_one_or_none()

    key = {column: values[column] for column in key_columns}
    stmt = select(model).where(*[getattr(model, c) == v for c, v in key.items()])
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise ConsistencyError(f"{model.__tablename__} row {key} vanished after insert")

    return inserted_id is not None, row


# Feeds

async def upsert_feed(
    session: AsyncSession,
    title: str,
    url: str,
    kind: str = "rss",
    lang: Optional[str] = None,
    active: bool = True,
) -> Feed:
    """
    Upsert a feed by URL.

    Returns:
        Feed row (existing, updated in place, or newly created)
    """
    created, feed = await _insert_if_absent(
        session,
        Feed,
        {"title": title, "url": url, "kind": kind, "lang": lang, "active": active},
        ["url"],
    )
    if not created:
        feed.title = title
        feed.kind = kind
        feed.lang = lang
        feed.active = active
        await session.flush()
    else:
        logger.info(f"Registered new feed: {title} ({url})")
    return feed


# Entries, fields and text values

async def insert_entry_if_new(
    session: AsyncSession, feed_id: FeedId, link: str, published_at
) -> Tuple[bool, Entry]:
    """Insert an entry, idempotent on (feed, link)."""
    return await _insert_if_absent(
        session,
        Entry,
        {"feed_id": feed_id, "link": link, "published_at": published_at},
        ["feed_id", "link"],
    )


async def insert_text_value_if_new(session: AsyncSession, text: str) -> Tuple[bool, TextValue]:
    """
    Insert a text value keyed by its fingerprint.

    Raises:
        ConsistencyError: if a different text is stored under the same fingerprint
    """
    fp = compute_fingerprint(text)
    created, value = await _insert_if_absent(
        session, TextValue, {"fingerprint": fp, "text": text}, ["fingerprint"]
    )
    if value.text != text:
        raise ConsistencyError(f"fingerprint {fp} already holds a different text")
    return created, value


async def insert_field_if_new(
    session: AsyncSession, entry_id: EntryId, kind: str, lang: str, fingerprint: str
) -> Tuple[bool, Field]:
    """Insert a field, idempotent on (entry, kind, lang)."""
    return await _insert_if_absent(
        session,
        Field,
        {"entry_id": entry_id, "kind": kind, "lang": lang, "fingerprint": fingerprint},
        ["entry_id", "kind", "lang"],
    )


async def insert_field_with_text(
    session: AsyncSession, entry_id: EntryId, kind: str, lang: str, text: str
) -> FieldInsert:
    """
    Write a Field and the TextValue it points at.

    Both writes happen in the caller's transaction so they succeed or
    fail together.
    """
    text_created, text_value = await insert_text_value_if_new(session, text)
    field_created, field_row = await insert_field_if_new(
        session, entry_id, kind, lang, text_value.fingerprint
    )
    return FieldInsert(field_row, field_created, text_value, text_created)


async def get_text_value(session: AsyncSession, fingerprint: str) -> Optional[TextValue]:
    stmt = select(TextValue).where(TextValue.fingerprint == fingerprint)
    return (await session.execute(stmt)).scalar_one_or_none()


async def require_text_value(session: AsyncSession, fingerprint: str) -> TextValue:
    """
    Resolve a fingerprint that must exist.

    Raises:
        ConsistencyError: if no TextValue backs the fingerprint
    """
    value = await get_text_value(session, fingerprint)
    if value is None:
        raise ConsistencyError(f"no text value for fingerprint {fingerprint}")
    return value


async def find_field(
    session: AsyncSession, entry_id: EntryId, kind: str, lang: str
) -> Optional[Field]:
    stmt = select(Field).where(
        Field.entry_id == entry_id, Field.kind == kind, Field.lang == lang
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_fields_by_fingerprint(
    session: AsyncSession,
    fingerprint: str,
    kind: Optional[str] = None,
    lang: Optional[str] = None,
) -> List[Field]:
    """Every Field that shares one text value."""
    stmt = select(Field).where(Field.fingerprint == fingerprint)
    if kind is not None:
        stmt = stmt.where(Field.kind == kind)
    if lang is not None:
        stmt = stmt.where(Field.lang == lang)
    result = await session.execute(stmt.order_by(Field.id))
    return list(result.scalars().all())


async def list_entry_fields(
    session: AsyncSession,
    entry_ids: Iterable[EntryId],
    kind: str,
    lang: Optional[str] = None,
) -> List[Field]:
    entry_ids = list(entry_ids)
    if not entry_ids:
        return []
    stmt = select(Field).where(Field.entry_id.in_(entry_ids), Field.kind == kind)
    if lang is not None:
        stmt = stmt.where(Field.lang == lang)
    result = await session.execute(stmt.order_by(Field.id))
    return list(result.scalars().all())


async def find_existing_translation(
    session: AsyncSession, source_fingerprint: str, kind: str, target_lang: str
) -> Optional[str]:
    """
    Fingerprint of a translation already stored for the same source text.

    Any entry holding the source text with a sibling target language
    field of the same kind counts.
    """
    source = aliased(Field)
    target = aliased(Field)
    stmt = (
        select(target.fingerprint)
        .join(source, and_(source.entry_id == target.entry_id, source.kind == target.kind))
        .where(
            source.fingerprint == source_fingerprint,
            source.kind == kind,
            source.lang != target_lang,
            target.lang == target_lang,
        )
        .order_by(target.id)
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


def _fingerprints_published_on(kind: str, lang: str, day: date):
    """Subquery of fingerprints of fields of one kind/lang whose entry was published on a day."""
    start, end = day_bounds(day)
    return (
        select(Field.fingerprint)
        .join(Entry, Entry.id == Field.entry_id)
        .where(
            Field.kind == kind,
            Field.lang == lang,
            Entry.published_at >= start,
            Entry.published_at < end,
        )
    )


async def list_fields_missing_translation(
    session: AsyncSession,
    kind: str,
    target_lang: str,
    day: date,
    source_lang: Optional[str] = None,
) -> List[Field]:
    """
    Source language fields published on a day with no target language sibling.

    Args:
        session: Database session
        kind: Field kind to translate
        target_lang: Language translations are written in
        day: UTC calendar day of the entries' publish time
        source_lang: Restrict to one source language; any non-target language when None

    Returns:
        Fields ordered by id
    """
    start, end = day_bounds(day)
    sibling = aliased(Field)
    has_sibling = (
        select(sibling.id)
        .where(
            sibling.entry_id == Field.entry_id,
            sibling.kind == Field.kind,
            sibling.lang == target_lang,
        )
        .exists()
    )
    stmt = (
        select(Field)
        .join(Entry, Entry.id == Field.entry_id)
        .where(
            Field.kind == kind,
            Field.lang != target_lang,
            Entry.published_at >= start,
            Entry.published_at < end,
            ~has_sibling,
        )
        .order_by(Field.id)
    )
    if source_lang is not None:
        stmt = stmt.where(Field.lang == source_lang)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_text_values_missing_embedding(
    session: AsyncSession, kind: str, lang: str, day: date
) -> List[TextValue]:
    """Text values referenced by a field published on a day that have no embedding yet."""
    embedded = select(Embedding.id).where(Embedding.fingerprint == TextValue.fingerprint).exists()
    stmt = (
        select(TextValue)
        .where(
            TextValue.fingerprint.in_(_fingerprints_published_on(kind, lang, day)),
            ~embedded,
        )
        .order_by(TextValue.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def insert_embedding_if_new(
    session: AsyncSession, fingerprint: str, vector: Sequence[float]
) -> Tuple[bool, Embedding]:
    """
    Store the embedding of a text value.

    Raises:
        ConsistencyError: if no TextValue exists for the fingerprint
    """
    await require_text_value(session, fingerprint)
    vector = [float(x) for x in vector]
    return await _insert_if_absent(
        session,
        Embedding,
        {"fingerprint": fingerprint, "vector": vector, "size": len(vector)},
        ["fingerprint"],
    )


async def list_embeddings_for_day(
    session: AsyncSession, kind: str, lang: str, day: date
) -> List[Embedding]:
    """Embeddings of every text of one kind/lang published on a day, ordered by id."""
    stmt = (
        select(Embedding)
        .where(Embedding.fingerprint.in_(_fingerprints_published_on(kind, lang, day)))
        .order_by(Embedding.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_embeddings(
    session: AsyncSession, embedding_ids: Iterable[EmbeddingId]
) -> Dict[EmbeddingId, Embedding]:
    embedding_ids = list(embedding_ids)
    if not embedding_ids:
        return {}
    stmt = select(Embedding).where(Embedding.id.in_(embedding_ids))
    result = await session.execute(stmt)
    return {EmbeddingId(e.id): e for e in result.scalars().all()}


async def list_entry_ids_for_fingerprints(
    session: AsyncSession, fingerprints: Iterable[str], kind: str, lang: str
) -> Dict[str, List[EntryId]]:
    """Map each fingerprint to the entries holding it as a field of kind/lang."""
    fingerprints = list(fingerprints)
    if not fingerprints:
        return {}
    stmt = (
        select(Field.fingerprint, Field.entry_id)
        .where(Field.fingerprint.in_(fingerprints), Field.kind == kind, Field.lang == lang)
        .order_by(Field.entry_id)
    )
    mapping: Dict[str, List[EntryId]] = {}
    for fp, entry_id in (await session.execute(stmt)).all():
        mapping.setdefault(fp, []).append(EntryId(entry_id))
    return mapping


async def list_entries_by_fingerprint(session: AsyncSession, fingerprint: str) -> List[Entry]:
    """Entries with any field holding the given text."""
    stmt = (
        select(Entry)
        .where(Entry.id.in_(select(Field.entry_id).where(Field.fingerprint == fingerprint)))
        .order_by(Entry.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# Reports

async def create_report(
    session: AsyncSession,
    threshold: float,
    min_points: int,
    score: float,
    rows: int,
    dimensions: int,
    field_kind: str,
    lang: str,
) -> Report:
    report = Report(
        threshold=threshold,
        min_points=min_points,
        score=score,
        rows=rows,
        dimensions=dimensions,
        field_kind=field_kind,
        lang=lang,
    )
    session.add(report)
    await session.flush()
    return report


async def create_report_group(
    session: AsyncSession,
    report_id: ReportId,
    member_ids: Sequence[EmbeddingId],
    representative_id: EmbeddingId,
) -> ReportGroup:
    """
    Persist one cluster and its membership inside a savepoint.

    Raises:
        ConsistencyError: if the representative is not a member or a
            member embedding does not exist
    """
    members = list(dict.fromkeys(member_ids))
    if not members:
        raise ConsistencyError(f"report {report_id} group has no members")
    if representative_id not in members:
        raise ConsistencyError(
            f"representative {representative_id} is not a member of its group"
        )

    async with session.begin_nested():
        count_stmt = select(func.count(Embedding.id)).where(Embedding.id.in_(members))
        found = (await session.execute(count_stmt)).scalar_one()
        if found != len(members):
            raise ConsistencyError(
                f"report {report_id} group references {len(members) - found} missing embeddings"
            )

        group = ReportGroup(report_id=report_id, representative_embedding_id=representative_id)
        session.add(group)
        await session.flush()

        session.add_all(
            ReportGroupEmbedding(report_group_id=group.id, embedding_id=embedding_id)
            for embedding_id in members
        )
        await session.flush()

    return group


async def get_report(session: AsyncSession, report_id: ReportId) -> Optional[Report]:
    return await session.get(Report, report_id)


async def get_latest_report(session: AsyncSession) -> Optional[Report]:
    stmt = select(Report).order_by(Report.created_at.desc(), Report.id.desc()).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_reports_for_day(session: AsyncSession, day: date) -> List[Report]:
    start, end = day_bounds(day)
    stmt = (
        select(Report)
        .where(Report.created_at >= start, Report.created_at < end)
        .order_by(Report.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_group_embedding_ids(
    session: AsyncSession, group_id: ReportGroupId
) -> List[EmbeddingId]:
    stmt = (
        select(ReportGroupEmbedding.embedding_id)
        .where(ReportGroupEmbedding.report_group_id == group_id)
        .order_by(ReportGroupEmbedding.embedding_id)
    )
    result = await session.execute(stmt)
    return [EmbeddingId(i) for i in result.scalars().all()]


async def list_report_groups(session: AsyncSession, report_id: ReportId) -> List[ReportGroupView]:
    """Groups of a report with their members, ordered by group id."""
    groups = (
        await session.execute(
            select(ReportGroup).where(ReportGroup.report_id == report_id).order_by(ReportGroup.id)
        )
    ).scalars().all()
    if not groups:
        return []

    views = {
        g.id: ReportGroupView(
            id=ReportGroupId(g.id),
            report_id=ReportId(g.report_id),
            representative_id=EmbeddingId(g.representative_embedding_id),
        )
        for g in groups
    }
    stmt = (
        select(ReportGroupEmbedding.report_group_id, ReportGroupEmbedding.embedding_id)
        .where(ReportGroupEmbedding.report_group_id.in_(views.keys()))
        .order_by(ReportGroupEmbedding.report_group_id, ReportGroupEmbedding.embedding_id)
    )
    for group_id, embedding_id in (await session.execute(stmt)).all():
        views[group_id].member_ids.append(EmbeddingId(embedding_id))

    return list(views.values())


async def list_group_entries(
    session: AsyncSession,
    group_id: ReportGroupId,
    embedding_kind: str,
    embedding_lang: str,
    display_kind: str,
    display_lang: str,
) -> List[GroupEntryView]:
    """
    Entries behind every member of a group, with their display title.

    One embedding can stand for several entries when outlets published
    byte identical text, so a group may list more entries than members.
    """
    group = await session.get(ReportGroup, group_id)
    if group is None:
        return []

    member_ids = await list_group_embedding_ids(session, group_id)
    embeddings = await get_embeddings(session, member_ids)
    missing = set(member_ids) - set(embeddings)
    if missing:
        raise ConsistencyError(f"group {group_id} references missing embeddings {sorted(missing)}")

    by_fingerprint = {e.fingerprint: EmbeddingId(e.id) for e in embeddings.values()}
    entry_ids_by_fp = await list_entry_ids_for_fingerprints(
        session, by_fingerprint.keys(), embedding_kind, embedding_lang
    )
    embedding_by_entry: Dict[EntryId, EmbeddingId] = {}
    for fp, entry_ids in entry_ids_by_fp.items():
        for entry_id in entry_ids:
            embedding_by_entry.setdefault(entry_id, by_fingerprint[fp])

    if not embedding_by_entry:
        return []

    entries = (
        await session.execute(
            select(Entry).where(Entry.id.in_(embedding_by_entry.keys())).order_by(Entry.id)
        )
    ).scalars().all()

    title_stmt = (
        select(Field.entry_id, TextValue.text)
        .join(TextValue, TextValue.fingerprint == Field.fingerprint)
        .where(
            Field.entry_id.in_(embedding_by_entry.keys()),
            Field.kind == display_kind,
            Field.lang == display_lang,
        )
    )
    titles = {entry_id: text for entry_id, text in (await session.execute(title_stmt)).all()}

    return [
        GroupEntryView(
            entry_id=EntryId(entry.id),
            feed_id=FeedId(entry.feed_id),
            link=entry.link,
            published_at=entry.published_at,
            embedding_id=embedding_by_entry[entry.id],
            is_representative=embedding_by_entry[entry.id] == group.representative_embedding_id,
            title=titles.get(entry.id),
        )
        for entry in entries
    ]


@dataclass
class DigestGroupView:
    """One story of a day's digest: a group shown through its representative entry."""
    group_id: ReportGroupId
    size: int
    representative_id: EmbeddingId
    entry_id: Optional[EntryId]
    title: Optional[str]
    link: Optional[str]
    feed_title: Optional[str]


async def list_digest_groups(
    session: AsyncSession,
    report_id: ReportId,
    embedding_kind: str,
    embedding_lang: str,
    display_kind: str,
    display_lang: str,
) -> List[DigestGroupView]:
    """
    Groups of a report ranked by member count, largest first.

    Each group carries the display title, link and feed of the entry
    behind its representative embedding. Equal sizes keep group order.
    """
    digest = []
    for group in await list_report_groups(session, report_id):
        entries = await list_group_entries(
            session, group.id, embedding_kind, embedding_lang, display_kind, display_lang
        )
        representative = next((e for e in entries if e.is_representative), None)
        feed = await session.get(Feed, representative.feed_id) if representative else None
        digest.append(
            DigestGroupView(
                group_id=group.id,
                size=len(group.member_ids),
                representative_id=group.representative_id,
                entry_id=representative.entry_id if representative else None,
                title=representative.title if representative else None,
                link=representative.link if representative else None,
                feed_title=feed.title if feed else None,
            )
        )

    digest.sort(key=lambda g: -g.size)
    return digest
