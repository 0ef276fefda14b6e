"""
K-means clustering of member feature vectors.

Implements Lloyd's algorithm over whole-matrix operations: squared
distances to every centroid, nearest-centroid assignment, and centroid
recomputation as the mean of assigned rows. Labels carry no meaning;
ranking clusters into engagement tiers happens in the orchestrator.

Centroids are seeded randomly, so results are only bit-reproducible when
a fixed random_state is passed.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple
import numpy as np
from sklearn.metrics import silhouette_score
from engagement_ml.config import Config
from engagement_ml.exceptions import DegenerateTrainingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterModel:
    """Result of one clustering run: centroids plus a label per training row."""
    centroids: np.ndarray
    labels: np.ndarray
    inertia: float
    n_iter: int
    silhouette: Optional[float] = None

    def __post_init__(self):
        self.centroids.setflags(write=False)
        self.labels.setflags(write=False)

    @property
    def n_clusters(self) -> int:
        return self.centroids.shape[0]

    def cluster_sizes(self) -> List[int]:
        return np.bincount(self.labels, minlength=self.n_clusters).tolist()


def squared_distances(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Squared Euclidean distance from every row to every centroid (n x k)."""
    diff = X[:, np.newaxis, :] - centroids[np.newaxis, :, :]
    return np.sum(diff ** 2, axis=2)


def assign_clusters(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Nearest-centroid label per row; ties go to the lowest cluster index."""
    return np.argmin(squared_distances(X, centroids), axis=1)


def update_centroids(
    X: np.ndarray,
    labels: np.ndarray,
    centroids: np.ndarray
) -> Tuple[np.ndarray, List[int]]:
    """
    Recompute each centroid as the mean of its assigned rows.

    A cluster with no assigned rows keeps its previous centroid.

    Returns:
        Tuple of (new centroids, indices of empty clusters)
    """
    k = centroids.shape[0]
    one_hot = np.eye(k)[labels].T  # k x n
    counts = one_hot.sum(axis=1)
    summed = one_hot @ X

    empty = np.flatnonzero(counts == 0).tolist()
    new_centroids = centroids.copy()
    filled = counts > 0
    new_centroids[filled] = summed[filled] / counts[filled, np.newaxis]
    return new_centroids, empty


def initialize_centroids(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """
    Draw k starting centroids from the distinct rows of X.

    When X has fewer than k distinct rows, the remainder are Gaussian draws
    around the data mean.
    """
    distinct = np.unique(X, axis=0)
    if len(distinct) >= k:
        picks = rng.choice(len(distinct), size=k, replace=False)
        return distinct[picks].astype(float)

    spread = X.std(axis=0) + 1.0
    padding = rng.normal(loc=X.mean(axis=0), scale=spread, size=(k - len(distinct), X.shape[1]))
    return np.vstack([distinct.astype(float), padding])


def run_lloyd(
    X: np.ndarray,
    k: int,
    iterations: int,
    rng: np.random.Generator
) -> ClusterModel:
    """
    Run Lloyd's algorithm once from a random initialization.

    Stops early once assignments stop changing, which is a fixed point.
    """
    centroids = initialize_centroids(X, k, rng)
    labels = assign_clusters(X, centroids)
    n_iter = 0
    warned_empty = set()

    for n_iter in range(1, iterations + 1):
        centroids, empty = update_centroids(X, labels, centroids)
        for cluster_id in empty:
            if cluster_id not in warned_empty:
                logger.warning(f"Cluster {cluster_id} received no members; keeping its previous centroid")
                warned_empty.add(cluster_id)

        new_labels = assign_clusters(X, centroids)
        if np.array_equal(new_labels, labels):
            break
        labels = new_labels

    if not np.all(np.isfinite(centroids)):
        raise DegenerateTrainingError("K-means produced non-finite centroids")

    distances = squared_distances(X, centroids)
    inertia = float(distances[np.arange(len(X)), labels].sum())
    return ClusterModel(centroids=centroids, labels=labels.astype(int), inertia=inertia, n_iter=n_iter)


def cluster_silhouette(X: np.ndarray, labels: np.ndarray) -> Optional[float]:
    """Silhouette score, or None when fewer than two clusters are populated."""
    n_labels = len(np.unique(labels))
    if n_labels < 2 or n_labels >= len(X):
        return None
    return float(silhouette_score(X, labels))


def iter_kmeans_runs(
    X: np.ndarray,
    n_clusters: int = Config.N_CLUSTERS,
    iterations: int = Config.KMEANS_ITERATIONS,
    restarts: int = Config.KMEANS_RESTARTS,
    random_state: Optional[int] = Config.RANDOM_SEED
) -> Iterator[ClusterModel]:
    """
    Yield one ClusterModel per independent Lloyd run.

    Raises:
        ValueError: If there are fewer rows than clusters
        DegenerateTrainingError: If X or the centroids are non-finite
    """
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError(f"Expected a 2-D feature matrix, got shape {X.shape}")
    if len(X) < n_clusters:
        raise ValueError(f"Need at least {n_clusters} rows to form {n_clusters} clusters, got {len(X)}")
    if not np.all(np.isfinite(X)):
        raise DegenerateTrainingError("Feature matrix contains non-finite values")

    logger.info(
        f"Fitting k-means: {X.shape[0]} samples, {X.shape[1]} features, "
        f"k={n_clusters}, iterations={iterations}, restarts={restarts}"
    )

    rng = np.random.default_rng(random_state)
    for _ in range(max(1, restarts)):
        yield run_lloyd(X, n_clusters, iterations, rng)


def select_best_run(X: np.ndarray, runs: Iterable[ClusterModel]) -> ClusterModel:
    """Keep the run with the lowest inertia and attach its silhouette score."""
    best: Optional[ClusterModel] = None
    for model in runs:
        if best is None or model.inertia < best.inertia:
            best = model
    if best is None:
        raise ValueError("No k-means runs to select from")

    X = np.asarray(X, dtype=float)
    result = ClusterModel(
        centroids=np.array(best.centroids),
        labels=np.array(best.labels),
        inertia=best.inertia,
        n_iter=best.n_iter,
        silhouette=cluster_silhouette(X, best.labels),
    )

    logger.info(f"K-means complete - inertia={result.inertia:.4f}, rounds={result.n_iter}")
    for cluster_id, count in enumerate(result.cluster_sizes()):
        pct = count / len(X) * 100
        logger.info(f"  Cluster {cluster_id}: {count} ({pct:.1f}%)")

    return result


def fit_kmeans(
    X: np.ndarray,
    n_clusters: int = Config.N_CLUSTERS,
    iterations: int = Config.KMEANS_ITERATIONS,
    restarts: int = Config.KMEANS_RESTARTS,
    random_state: Optional[int] = Config.RANDOM_SEED
) -> ClusterModel:
    """
    Partition the rows of X into n_clusters clusters.

    Runs Lloyd's algorithm `restarts` times and keeps the run with the
    lowest inertia.

    Args:
        X: Feature matrix (n x d), n >= n_clusters
        n_clusters: Number of clusters
        iterations: Maximum Lloyd rounds per run
        restarts: Number of independent runs
        random_state: Seed for reproducible results (None = fresh entropy)

    Returns:
        ClusterModel for the best run
    """
    runs = iter_kmeans_runs(X, n_clusters, iterations, restarts, random_state)
    return select_best_run(X, runs)
