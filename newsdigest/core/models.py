"""Database models for the digest store.

Text never lives on a Field row. Fields point at a TextValue by
fingerprint, and Embeddings are keyed by the same fingerprint, so
translation and embedding work is paid once per distinct string.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    String, DateTime, Boolean, Text, Integer, Float, JSON,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import mapped_column

from .db import Base
from .hashing import FINGERPRINT_LENGTH


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Feed(Base):
    """Configured news feeds."""
    __tablename__ = "feeds"

    id = mapped_column(Integer, primary_key=True)
    title = mapped_column(String(200), nullable=False)
    url = mapped_column(String(1000), unique=True, nullable=False)
    kind = mapped_column(String(16), nullable=False, default="rss")  # 'rss' | 'html'
    lang = mapped_column(String(8), nullable=True)
    active = mapped_column(Boolean, default=True, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Entry(Base):
    """One published item from one feed."""
    __tablename__ = "entries"

    id = mapped_column(Integer, primary_key=True)
    feed_id = mapped_column(ForeignKey("feeds.id"), index=True, nullable=False)
    link = mapped_column(String(1500), nullable=False)
    published_at = mapped_column(DateTime(timezone=True), index=True, nullable=False)  # UTC
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("feed_id", "link", name="uq_entries_feed_link"),)


class TextValue(Base):
    """Content addressed text blob."""
    __tablename__ = "text_values"

    id = mapped_column(Integer, primary_key=True)
    fingerprint = mapped_column(String(FINGERPRINT_LENGTH), unique=True, nullable=False)
    text = mapped_column(Text, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Field(Base):
    """One kind/language tagged text attribute of an entry."""
    __tablename__ = "fields"

    id = mapped_column(Integer, primary_key=True)
    entry_id = mapped_column(ForeignKey("entries.id"), index=True, nullable=False)
    kind = mapped_column(String(32), nullable=False)  # title | description | content
    lang = mapped_column(String(8), nullable=False)
    fingerprint = mapped_column(
        ForeignKey("text_values.fingerprint"), index=True, nullable=False
    )
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("entry_id", "kind", "lang", name="uq_fields_entry_kind_lang"),
        Index("ix_fields_kind_lang", "kind", "lang"),
    )


class Embedding(Base):
    """Content addressed vector computed from the TextValue with the same fingerprint."""
    __tablename__ = "embeddings"

    id = mapped_column(Integer, primary_key=True)
    fingerprint = mapped_column(
        ForeignKey("text_values.fingerprint"), unique=True, nullable=False
    )
    vector = mapped_column(JSON, nullable=False)
    size = mapped_column(Integer, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Report(Base):
    """One clustering run."""
    __tablename__ = "reports"

    id = mapped_column(Integer, primary_key=True)
    threshold = mapped_column(Float, nullable=False)
    min_points = mapped_column(Integer, nullable=False)
    score = mapped_column(Float, nullable=False)
    rows = mapped_column(Integer, nullable=False)
    dimensions = mapped_column(Integer, nullable=False)
    field_kind = mapped_column(String(32), nullable=False)
    lang = mapped_column(String(8), nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, index=True, nullable=False)


class ReportGroup(Base):
    """One cluster within a report."""
    __tablename__ = "report_groups"

    id = mapped_column(Integer, primary_key=True)
    report_id = mapped_column(ForeignKey("reports.id"), index=True, nullable=False)
    representative_embedding_id = mapped_column(ForeignKey("embeddings.id"), nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class ReportGroupEmbedding(Base):
    """Membership of an embedding in a report group."""
    __tablename__ = "report_group_embeddings"

    report_group_id = mapped_column(ForeignKey("report_groups.id"), primary_key=True)
    embedding_id = mapped_column(ForeignKey("embeddings.id"), primary_key=True, index=True)
