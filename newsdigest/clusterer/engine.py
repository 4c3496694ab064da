"""Adaptive density clustering of embeddings.

Searches a grid of distance thresholds, runs DBSCAN at each one, scores
the partition with the silhouette coefficient and keeps the best
candidate. Each retained cluster gets the member nearest its centroid
as representative.

The numeric work is synchronous and runs on a bounded thread pool so the
event loop stays free for network I/O.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from sklearn.cluster import DBSCAN
from sklearn.metrics import silhouette_score
from sklearn.neighbors import NearestNeighbors

from newsdigest.core.errors import ClusteringError, DimensionMismatchError
from newsdigest.core.ids import EmbeddingId
from newsdigest.core.logging import get_logger

logger = get_logger(__name__)

# Score of partitions the silhouette is undefined for
MIN_SCORE = -1.0
NOISE = -1

OBJECTIVE_COUNT_X_SCORE = "count_x_score"
OBJECTIVE_SCORE = "score"
OBJECTIVES = (OBJECTIVE_COUNT_X_SCORE, OBJECTIVE_SCORE)


@dataclass(frozen=True)
class ClusteringParams:
    """Per deployment clustering configuration."""
    min_points: int = 2
    threshold_lo: float = 0.3
    threshold_hi: float = 1.2
    samples: int = 20
    objective: str = OBJECTIVE_COUNT_X_SCORE
    early_stop: bool = True

    def __post_init__(self):
        if self.min_points < 1:
            raise ValueError("min_points must be at least 1")
        if self.samples < 1:
            raise ValueError("samples must be at least 1")
        if not 0 < self.threshold_lo <= self.threshold_hi:
            raise ValueError("threshold interval must satisfy 0 < lo <= hi")
        if self.objective not in OBJECTIVES:
            raise ValueError(f"objective must be one of {OBJECTIVES}")


@dataclass
class Cluster:
    member_ids: List[EmbeddingId]
    representative_id: EmbeddingId


@dataclass
class SearchSample:
    threshold: float
    clusters: int
    score: float


@dataclass
class ClusteringResult:
    clusters: List[Cluster]
    threshold: float
    min_points: int
    score: float
    rows: int
    dimensions: int
    samples: List[SearchSample] = field(default_factory=list)


def build_matrix(
    items: Sequence[Tuple[EmbeddingId, Sequence[float]]]
) -> Tuple[List[EmbeddingId], np.ndarray]:
    """
    Stack embedding vectors into a matrix.

    Raises:
        DimensionMismatchError: if the vectors do not all share one length
    """
    if not items:
        return [], np.zeros((0, 0))

    expected = len(items[0][1])
    for embedding_id, vector in items:
        if len(vector) != expected:
            raise DimensionMismatchError(expected, len(vector), embedding_id)

    ids = [embedding_id for embedding_id, _ in items]
    matrix = np.asarray([vector for _, vector in items], dtype=np.float64)
    return ids, matrix


def cluster_labels(matrix: np.ndarray, threshold: float, min_points: int) -> np.ndarray:
    """DBSCAN labels at a fixed threshold; -1 marks noise. The neighbourhood count includes the point."""
    return DBSCAN(eps=threshold, min_samples=min_points, metric="euclidean").fit_predict(matrix)


def partition_score(matrix: np.ndarray, labels: np.ndarray) -> float:
    """
    Silhouette coefficient over clustered points only.

    MIN_SCORE when the coefficient is undefined: fewer than two clusters,
    or every clustered point in a cluster of its own.
    """
    clustered = labels != NOISE
    n_clustered = int(clustered.sum())
    n_labels = len(set(labels[clustered].tolist()))
    if n_labels < 2 or n_labels >= n_clustered:
        return MIN_SCORE
    return float(silhouette_score(matrix[clustered], labels[clustered], metric="euclidean"))


def _rank(n_clusters: int, score: float, objective: str) -> Tuple[int, float]:
    # empty < single cluster < any multi cluster partition, then the objective
    tier = min(n_clusters, 2)
    value = n_clusters * score if objective == OBJECTIVE_COUNT_X_SCORE else score
    return tier, value


def search_threshold(
    matrix: np.ndarray, params: ClusteringParams
) -> Tuple[float, np.ndarray, float, List[SearchSample]]:
    """
    Grid search of the DBSCAN threshold.

    Returns:
        Tuple of (threshold, labels, score, evaluated samples). Ties keep
        the smaller threshold.
    """
    best = None
    samples: List[SearchSample] = []
    max_clusters = 0

    for threshold in np.linspace(params.threshold_lo, params.threshold_hi, params.samples):
        threshold = float(threshold)
        labels = cluster_labels(matrix, threshold, params.min_points)
        n_clusters = len(set(labels.tolist()) - {NOISE})

        if params.early_stop and n_clusters < max_clusters:
            logger.debug(f"Cluster count fell to {n_clusters} at {threshold:.4f}, stopping search")
            break
        max_clusters = max(max_clusters, n_clusters)

        score = partition_score(matrix, labels)
        samples.append(SearchSample(threshold, n_clusters, score))

        rank = _rank(n_clusters, score, params.objective)
        if best is None or rank > best[0]:
            best = (rank, threshold, labels, score)

    _, threshold, labels, score = best
    return threshold, labels, score, samples


def representative_index(points: np.ndarray) -> int:
    """Index of the row nearest the centroid of `points`."""
    centroid = np.mean(points, axis=0)
    index = NearestNeighbors(n_neighbors=1, metric="euclidean").fit(points)
    _, nearest = index.kneighbors(centroid.reshape(1, -1))
    return int(nearest[0][0])


def cluster_embeddings(
    ids: Sequence[EmbeddingId], matrix: np.ndarray, params: ClusteringParams
) -> ClusteringResult:
    """
    Cluster one day's embeddings. Pure and synchronous.

    Fewer rows than `min_points` yield no clusters and the floor score.
    """
    rows = len(ids)
    dimensions = int(matrix.shape[1]) if rows else 0

    if rows < params.min_points:
        logger.info(f"Only {rows} embeddings for min_points={params.min_points}, no clusters")
        return ClusteringResult(
            clusters=[],
            threshold=params.threshold_lo,
            min_points=params.min_points,
            score=MIN_SCORE,
            rows=rows,
            dimensions=dimensions,
        )

    threshold, labels, score, samples = search_threshold(matrix, params)

    clusters = []
    for label in sorted(set(labels.tolist()) - {NOISE}):
        members = np.flatnonzero(labels == label)
        center = members[representative_index(matrix[members])]
        clusters.append(
            Cluster(
                member_ids=[ids[i] for i in members],
                representative_id=ids[center],
            )
        )

    return ClusteringResult(
        clusters=clusters,
        threshold=threshold,
        min_points=params.min_points,
        score=score,
        rows=rows,
        dimensions=dimensions,
        samples=samples,
    )


class ClusteringEngine:
    """Runs clustering on a dedicated worker pool and awaits the result."""

    def __init__(self, params: ClusteringParams, max_workers: int = 1):
        self.params = params
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cluster")

    async def run(
        self,
        items: Sequence[Tuple[EmbeddingId, Sequence[float]]],
        params: Optional[ClusteringParams] = None,
    ) -> ClusteringResult:
        """
        Cluster embeddings given as (id, vector) pairs.

        Raises:
            DimensionMismatchError: if vector lengths differ
            ClusteringError: if the worker fails
        """
        params = params or self.params
        ids, matrix = build_matrix(items)

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                self.executor, cluster_embeddings, ids, matrix, params
            )
        except Exception as e:
            raise ClusteringError(f"clustering worker failed: {type(e).__name__}: {e}") from e

        logger.info(
            f"Clustered {result.rows} embeddings into {len(result.clusters)} clusters "
            f"at threshold {result.threshold:.4f} (score {result.score:.4f})",
            extra={"samples": len(result.samples), "dimensions": result.dimensions},
        )
        return result

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
