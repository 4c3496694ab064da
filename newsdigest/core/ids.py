"""Distinct id types per entity so an entry id is never passed where an embedding id is expected."""
from typing import NewType

FeedId = NewType("FeedId", int)
EntryId = NewType("EntryId", int)
FieldId = NewType("FieldId", int)
TextValueId = NewType("TextValueId", int)
EmbeddingId = NewType("EmbeddingId", int)
ReportId = NewType("ReportId", int)
ReportGroupId = NewType("ReportGroupId", int)
