import numpy as np

from conftest import StubRng
from gifter_jobs.services.clustering import (
    Cluster,
    Point,
    cluster_points,
    cosine_distance,
    cosine_similarity,
    score_clusters,
)


def _groups(n_groups: int, per_group: int, dims: int = 6) -> tuple[list[Point], dict[str, int]]:
    """Tight groups around orthogonal axes, tiny jitter in the last dimension."""
    points: list[Point] = []
    labels: dict[str, int] = {}
    for g in range(n_groups):
        for i in range(per_group):
            vector = [0.0] * dims
            vector[g] = 1.0
            vector[-1] = 0.01 * (i % 3)
            pid = f"g{g}-{i}"
            points.append(Point(id=pid, vector=tuple(vector)))
            labels[pid] = g
    return points, labels


def test_cosine_helpers():
    a = np.array([1.0, 0.0])
    b = np.array([0.0, 2.0])
    assert cosine_similarity(a, a) == 1.0
    assert cosine_similarity(a, b) == 0.0
    assert cosine_distance(a, b) == 1.0
    # Zero vectors never divide by zero
    assert cosine_similarity(a, np.zeros(2)) == 0.0


def test_well_separated_groups_recovered_exactly():
    points, labels = _groups(4, 25)
    outcome = cluster_points(points, 4, max_iterations=20, tolerance=0.001, rng=np.random.default_rng(3))
    # One seed per group so every group owns a centroid
    seeded = cluster_points(points, 4, max_iterations=20, tolerance=0.001, rng=StubRng([0, 25, 50, 75]))

    assert seeded.converged is True
    assert seeded.iterations <= 20
    assert len(seeded.clusters) == 4
    for cluster in seeded.clusters:
        assert cluster.size == 25
        assert len({labels[pid] for pid in cluster.member_ids}) == 1
    # Every point is assigned exactly once
    assert sorted(pid for c in outcome.clusters for pid in c.member_ids) == sorted(labels)


def test_k_larger_than_groups_prunes_empty_clusters():
    # Three identical points per group: extra centroids seeded on duplicates end up empty.
    points = [Point(id=f"a{i}", vector=(1.0, 0.0)) for i in range(3)] + [Point(id=f"b{i}", vector=(0.0, 1.0)) for i in range(3)]
    outcome = cluster_points(points, 4, rng=StubRng([0, 3, 1, 4]))
    assert outcome.converged is True
    assert len(outcome.clusters) < 4
    assert all(c.size > 0 for c in outcome.clusters)
    assert sum(c.size for c in outcome.clusters) == 6


def test_k_capped_by_point_count_and_empty_input():
    points = [Point(id="only", vector=(1.0, 1.0))]
    outcome = cluster_points(points, 5)
    assert len(outcome.clusters) == 1
    assert outcome.clusters[0].member_ids == ["only"]
    assert cluster_points([], 3).clusters == []
    assert cluster_points(points, 0).clusters == []



def test_mismatched_dimensions_are_skipped():
    points, labels = _groups(2, 10, dims=5)
    points.insert(3, Point(id="other-model", vector=(0.5,) * 6))
    outcome = cluster_points(points, 2, rng=StubRng([0, 10]))

    assert outcome.skipped_ids == ["other-model"]
    assert sorted(pid for c in outcome.clusters for pid in c.member_ids) == sorted(labels)
    for cluster in outcome.clusters:
        assert len({labels[pid] for pid in cluster.member_ids}) == 1

def test_score_ordering_prefers_coherent_adequate_clusters():
    centroid = np.array([1.0, 0.0])
    tight = Cluster(centroid=centroid, points=[Point(id=f"t{i}", vector=(1.0, 0.0)) for i in range(12)])
    loose = Cluster(
        centroid=centroid,
        points=[Point(id=f"l{i}", vector=(1.0, float(i))) for i in range(12)],
    )
    small = Cluster(centroid=centroid, points=[Point(id=f"s{i}", vector=(1.0, 0.0)) for i in range(3)])
    ranked = score_clusters([loose, small, tight], min_size=10)

    assert [c.score for c in ranked] == sorted((c.score for c in ranked), reverse=True)
    assert ranked[0] is tight
    assert tight.coherence_score == 1.0
    # Full coherence: 0.7 * 1.0 + 0.3 * 1.0
    assert abs(tight.score - 1.0) < 1e-9
    # Undersized clusters only get half the adequacy credit
    assert abs(small.score - (0.7 + 0.3 * 0.5)) < 1e-9
    assert loose.coherence_score < tight.coherence_score
