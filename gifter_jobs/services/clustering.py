"""K-means over embedding points with cosine distance, plus cluster scoring.

Pure functions: no I/O, no shared state. Initial centroids are k distinct
points sampled uniformly at random, so two runs on the same input can differ
unless a seeded ``rng`` is passed.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from gifter_jobs.config import CLUSTERING_SETTINGS


@dataclass(slots=True, frozen=True)
class Point:
    id: str
    vector: tuple[float, ...]


@dataclass(slots=True)
class Cluster:
    centroid: np.ndarray
    points: list[Point] = field(default_factory=list)
    coherence_score: float = 0.0
    score: float = 0.0

    @property
    def size(self) -> int:
        return len(self.points)

    @property
    def member_ids(self) -> list[str]:
        return [p.id for p in self.points]


@dataclass(slots=True)
class ClusteringOutcome:
    clusters: list[Cluster]
    iterations: int
    converged: bool
    skipped_ids: list[str] = field(default_factory=list)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    return 1.0 - cosine_similarity(a, b)


def _similarity_matrix(matrix: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """(n, k) cosine similarities; rows or centroids with zero norm score 0."""
    point_norms = np.linalg.norm(matrix, axis=1)
    centroid_norms = np.linalg.norm(centroids, axis=1)
    denom = np.outer(point_norms, centroid_norms)
    dots = matrix @ centroids.T
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / np.where(denom > 0, denom, 1.0), 0.0)
    return sims


def _uniform_dimension(points: Sequence[Point]) -> tuple[list[Point], list[str]]:
    dims, _ = Counter(len(p.vector) for p in points).most_common(1)[0]
    kept = [p for p in points if len(p.vector) == dims]
    return kept, [p.id for p in points if len(p.vector) != dims]


def cluster_points(
    points: Sequence[Point],
    k: int,
    *,
    max_iterations: Optional[int] = None,
    tolerance: Optional[float] = None,
    rng: Optional[np.random.Generator] = None,
) -> ClusteringOutcome:
    """Partition ``points`` into at most ``k`` non-empty clusters.

    Points whose vector length differs from the most common length are left
    out and reported in ``skipped_ids``.
    """
    max_iterations = int(max_iterations if max_iterations is not None else CLUSTERING_SETTINGS["max_iterations"])
    tolerance = float(tolerance if tolerance is not None else CLUSTERING_SETTINGS["convergence_tolerance"])
    if not points or k < 1:
        return ClusteringOutcome(clusters=[], iterations=0, converged=True)

    points, skipped_ids = _uniform_dimension(points)
    matrix = np.asarray([p.vector for p in points], dtype=float)
    n = matrix.shape[0]
    k = min(k, n)
    rng = rng if rng is not None else np.random.default_rng()
    centroids = matrix[rng.choice(n, size=k, replace=False)].copy()
    assignments = np.zeros(n, dtype=int)

    iterations = 0
    converged = False
    while iterations < max_iterations:
        iterations += 1
        # Ties go to the lowest centroid index.
        assignments = np.argmax(_similarity_matrix(matrix, centroids), axis=1)

        new_centroids = centroids.copy()
        for idx in range(k):
            members = matrix[assignments == idx]
            if len(members):
                new_centroids[idx] = members.mean(axis=0)
            # an empty cluster keeps its previous centroid

        shifts = [cosine_distance(centroids[i], new_centroids[i]) for i in range(k)]
        centroids = new_centroids
        if all(shift <= tolerance for shift in shifts):
            converged = True
            break

    clusters = [Cluster(centroid=centroids[i]) for i in range(k)]
    for point, idx in zip(points, assignments):
        clusters[int(idx)].points.append(point)
    return ClusteringOutcome(
        clusters=[c for c in clusters if c.points],
        iterations=iterations,
        converged=converged,
        skipped_ids=skipped_ids,
    )


def score_clusters(clusters: Sequence[Cluster], *, min_size: Optional[int] = None) -> list[Cluster]:
    """Score clusters by coherence and size adequacy; returns them sorted best-first."""
    min_size = int(min_size if min_size is not None else CLUSTERING_SETTINGS["min_cluster_size"])
    coherence_weight = float(CLUSTERING_SETTINGS["coherence_weight"])
    adequacy_weight = float(CLUSTERING_SETTINGS["adequacy_weight"])
    undersized = float(CLUSTERING_SETTINGS["undersized_adequacy"])

    for cluster in clusters:
        if not cluster.points:
            cluster.coherence_score = 0.0
            cluster.score = 0.0
            continue
        sims = [cosine_similarity(np.asarray(p.vector, dtype=float), cluster.centroid) for p in cluster.points]
        cluster.coherence_score = float(np.mean(sims))
        adequacy = undersized if cluster.size < min_size else 1.0
        cluster.score = max(0.0, coherence_weight * cluster.coherence_score + adequacy_weight * adequacy)
    return sorted(clusters, key=lambda c: c.score, reverse=True)


__all__ = [
    "Point",
    "Cluster",
    "ClusteringOutcome",
    "cosine_similarity",
    "cosine_distance",
    "cluster_points",
    "score_clusters",
]
