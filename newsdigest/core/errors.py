"""Error taxonomy for the digest pipeline.

Collaborator errors are transient and degrade a single feed or item.
Consistency and clustering errors abort the whole cycle.
"""
from typing import Optional


class NewsDigestError(Exception):
    """Base class for all pipeline errors."""


class CollaboratorError(NewsDigestError):
    """An external collaborator (feed site, translation or embedding API) failed."""


class FetchError(CollaboratorError):
    """Network or HTTP failure while fetching a feed."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(f"{url}: {message}")


class ParseError(CollaboratorError):
    """A feed or page could not be parsed."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"{url}: {message}")


class ApiError(CollaboratorError):
    """Translation or embedding backend failure."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class ConsistencyError(NewsDigestError):
    """A store invariant is broken. Never retried."""


class DimensionMismatchError(ConsistencyError):
    """Embeddings in one clustering run have different vector lengths."""

    def __init__(self, expected: int, found: int, embedding_id: Optional[int] = None):
        self.expected = expected
        self.found = found
        self.embedding_id = embedding_id
        super().__init__(
            f"embedding {embedding_id} has length {found}, expected {expected}"
        )


class ClusteringError(NewsDigestError):
    """The clustering worker crashed."""


class CycleAbortedError(NewsDigestError):
    """A stage failed in a way that invalidates the whole cycle."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {type(cause).__name__}: {cause}")
