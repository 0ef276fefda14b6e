"""
Model orchestration for one organization's engagement analytics.

EngagementModel is an explicit session object: the caller creates it, stages
feature vectors (from Supabase, from raw frames, or precomputed), trains, and
reads results. Staged data and published results are kept apart; a training
run only replaces the published session once every stage has succeeded.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Union
import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler
from engagement_ml.config import Config
from engagement_ml.clustering import ClusterModel, iter_kmeans_runs, select_best_run
from engagement_ml.data_extraction import fetch_engagement_data
from engagement_ml.exceptions import (
    DataFetchError,
    DegenerateTrainingError,
    EngagementAnalyticsError,
    InsufficientDataError,
    ModelNotTrainedError,
    TrainingInProgressError,
)
from engagement_ml.export import NO_DATA, export_to_csv, export_to_json
from engagement_ml.feature_engineering import build_feature_matrix, build_user_features, rsvp_labels
from engagement_ml.insights import (
    ClusterInsight,
    DataQualityReport,
    PredictionInsights,
    ProbabilityThresholds,
    build_cluster_insights,
    build_data_quality_report,
    build_prediction_insights,
    fixed_thresholds,
    resolve_thresholds,
)
from engagement_ml.model_training import (
    ClassifierModel,
    collect_classifier,
    evaluate_classifier,
    fit_scaler,
    iter_gradient_descent,
)
from engagement_ml.models import TimeWindow, TrainingProgress, UserFeatureVector, resolve_time_window

logger = logging.getLogger(__name__)

# Number of progress reports emitted across the classifier epochs
EPOCH_REPORTS = 20

Fetcher = Callable[[str, TimeWindow], Awaitable[Dict[str, pd.DataFrame]]]


@dataclass
class TrainingSession:
    """Published result of one successful training run."""
    org_id: Optional[str]
    window: Optional[TimeWindow]
    total_events: int
    vectors: List[UserFeatureVector]
    scaler: Optional[StandardScaler]
    cluster_model: ClusterModel
    classifier: ClassifierModel
    segment_of: Dict[int, str]
    thresholds: ProbabilityThresholds
    training_metrics: Dict[str, object]
    trained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def segment_names(n_clusters: int) -> List[str]:
    """Bucket names from lowest to highest engagement."""
    if n_clusters == 3:
        return ["low", "medium", "high"]
    if n_clusters == 2:
        return ["low", "high"]
    return [f"segment_{i + 1}" for i in range(n_clusters)]


def rank_clusters(
    labels: Sequence[int],
    vectors: Sequence[UserFeatureVector],
    n_clusters: int
) -> List[int]:
    """
    Order raw cluster ids from lowest to highest engagement.

    Non-empty clusters are ranked by mean engagement_frequency, then mean
    rsvp_rate, then id. Empty clusters go last.
    """
    keys = {}
    for cluster_id in range(n_clusters):
        members = [v for v, label in zip(vectors, labels) if label == cluster_id]
        if members:
            keys[cluster_id] = (
                0,
                float(np.mean([v.engagement_frequency for v in members])),
                float(np.mean([v.rsvp_rate for v in members])),
                cluster_id,
            )
        else:
            keys[cluster_id] = (1, 0.0, 0.0, cluster_id)
    return sorted(range(n_clusters), key=lambda cluster_id: keys[cluster_id])


class EngagementModel:
    """
    Clustering and RSVP-likelihood models for one organization and window.

    Only one training run may execute at a time per instance; a second
    concurrent call raises TrainingInProgressError.
    """

    def __init__(
        self,
        n_clusters: int = Config.N_CLUSTERS,
        min_members: int = Config.MIN_MEMBERS,
        learning_rate: float = Config.LEARNING_RATE,
        epochs: int = Config.EPOCHS,
        kmeans_iterations: int = Config.KMEANS_ITERATIONS,
        kmeans_restarts: int = Config.KMEANS_RESTARTS,
        random_state: Optional[int] = Config.RANDOM_SEED,
        scale_features: bool = Config.SCALE_FEATURES,
        threshold_strategy: str = Config.THRESHOLD_STRATEGY
    ):
        if n_clusters < 1:
            raise ValueError(f"n_clusters must be positive, got {n_clusters}")
        if threshold_strategy not in ("dynamic", "fixed"):
            raise ValueError(f"Unknown threshold strategy: {threshold_strategy}")

        self.n_clusters = n_clusters
        self.min_members = min_members
        self.learning_rate = learning_rate
        self.epochs = epochs
        self.kmeans_iterations = kmeans_iterations
        self.kmeans_restarts = kmeans_restarts
        self.random_state = random_state
        self.scale_features = scale_features
        self.threshold_strategy = threshold_strategy

        self._staged_vectors: List[UserFeatureVector] = []
        self._staged_total_events = 0
        self._staged_org_id: Optional[str] = None
        self._staged_window: Optional[TimeWindow] = None

        self._session: Optional[TrainingSession] = None
        self._training_lock = threading.Lock()

    # ─────────────────────────────────────────────────────────────
    # LOADING
    # ─────────────────────────────────────────────────────────────

    def load_features(
        self,
        vectors: Sequence[UserFeatureVector],
        total_events: int,
        org_id: Optional[str] = None,
        window: Optional[TimeWindow] = None
    ) -> None:
        """
        Stage precomputed feature vectors for the next training run.

        Replaces any previously staged data. Published results are untouched.
        """
        if total_events < 0:
            raise ValueError(f"total_events must be non-negative, got {total_events}")
        for v in vectors:
            if not isinstance(v, UserFeatureVector):
                raise TypeError(f"Expected UserFeatureVector, got {type(v).__name__}")

        self._staged_vectors = [replace(v, cluster=None, predicted_probability=None) for v in vectors]
        self._staged_total_events = int(total_events)
        self._staged_org_id = org_id
        self._staged_window = window
        logger.info(f"Staged {len(self._staged_vectors)} feature vectors ({total_events} events)")

    def load_from_frames(
        self,
        members: pd.DataFrame,
        interactions: pd.DataFrame,
        events: pd.DataFrame,
        org_id: Optional[str] = None,
        window: Optional[TimeWindow] = None
    ) -> List[UserFeatureVector]:
        """
        Build feature vectors from raw frames and stage them.

        Args:
            members: Active roster (user_id, user_name)
            interactions: Interaction log (user_id, action, created_at)
            events: Event posts in the window; the row count is the RSVP denominator
            org_id: Organization id
            window: Resolved time window

        Returns:
            The staged feature vectors
        """
        vectors = build_user_features(members, interactions, len(events), window=window, org_id=org_id)
        self.load_features(vectors, len(events), org_id=org_id, window=window)
        return list(vectors)

    async def load_data(
        self,
        org_id: str,
        window: Union[None, str, TimeWindow] = None,
        client=None,
        fetcher: Optional[Fetcher] = None
    ) -> List[UserFeatureVector]:
        """
        Fetch one organization's data and stage its feature vectors.

        Cancelling the awaiting task leaves the model unchanged.

        Args:
            org_id: Organization id
            window: TimeWindow, selector string, or None for the configured default
            client: Optional Supabase client for the default fetcher
            fetcher: Optional coroutine function (org_id, window) -> frames dict

        Returns:
            The staged feature vectors

        Raises:
            DataFetchError: If the upstream query fails
        """
        if window is None:
            window = Config.DEFAULT_TIME_WINDOW
        if isinstance(window, str):
            window = resolve_time_window(window)

        logger.info(f"Loading engagement data for organization {org_id} ({window.selector})")

        try:
            if fetcher is None:
                data = await fetch_engagement_data(org_id, window, client)
            else:
                data = await fetcher(org_id, window)
        except (EngagementAnalyticsError, ValueError):
            raise
        except Exception as e:
            logger.error(f"Error fetching engagement data for organization {org_id}: {e}")
            raise DataFetchError(f"Failed to fetch engagement data for organization {org_id}: {e}") from e

        return self.load_from_frames(
            data["members"],
            data["interactions"],
            data["events"],
            org_id=org_id,
            window=window,
        )

    # ─────────────────────────────────────────────────────────────
    # TRAINING
    # ─────────────────────────────────────────────────────────────

    def has_enough_data(self) -> bool:
        """True when the staged roster meets the member floor and someone is active."""
        n = len(self._staged_vectors)
        if n < max(self.min_members, self.n_clusters):
            return False
        return any(v.engagement_frequency > 0 for v in self._staged_vectors)

    def _check_sufficiency(self) -> None:
        n = len(self._staged_vectors)
        active = sum(1 for v in self._staged_vectors if v.engagement_frequency > 0)
        if n < max(self.min_members, self.n_clusters):
            raise InsufficientDataError(
                f"Need at least {self.min_members} active members to train, got {n}",
                member_count=n,
                active_count=active,
            )
        if active == 0:
            raise InsufficientDataError(
                f"None of the {n} members has any activity in this window",
                member_count=n,
                active_count=active,
            )

    def iter_training(self) -> Iterator[TrainingProgress]:
        """
        Train both models, yielding progress as it goes.

        Percentages are non-decreasing. Results are published just before the
        final 100% report; abandoning the generator earlier publishes nothing.

        Raises:
            TrainingInProgressError: If another run is executing
            InsufficientDataError: If the staged data is below the floor
            DegenerateTrainingError: If training produces non-finite values
        """
        if not self._training_lock.acquire(blocking=False):
            raise TrainingInProgressError("A training run is already in progress for this model")

        try:
            self._check_sufficiency()

            vectors = list(self._staged_vectors)
            total_events = self._staged_total_events
            org_id = self._staged_org_id
            window = self._staged_window

            logger.info("=" * 60)
            logger.info(f"Training engagement models on {len(vectors)} members")
            logger.info("=" * 60)
            yield TrainingProgress(0.0, "Preparing training data")

            X = build_feature_matrix(vectors)
            y = rsvp_labels(vectors)

            yield TrainingProgress(10.0, "Scaling features")
            scaler = None
            if self.scale_features:
                scaler = fit_scaler(X)
                X_model = scaler.transform(X)
            else:
                X_model = X

            yield TrainingProgress(20.0, "Clustering members")
            restarts = max(1, self.kmeans_restarts)
            runs = []
            kmeans_runs = iter_kmeans_runs(
                X_model,
                n_clusters=self.n_clusters,
                iterations=self.kmeans_iterations,
                restarts=restarts,
                random_state=self.random_state,
            )
            for i, run in enumerate(kmeans_runs, start=1):
                runs.append(run)
                yield TrainingProgress(20.0 + 30.0 * i / restarts, f"Clustering members (run {i}/{restarts})")
            cluster_model = select_best_run(X_model, runs)

            yield TrainingProgress(50.0, "Training RSVP classifier")
            report_every = max(1, self.epochs // EPOCH_REPORTS)
            epoch_results = []
            for result in iter_gradient_descent(X_model, y, self.learning_rate, self.epochs):
                epoch_results.append(result)
                if result.epoch % report_every == 0 or result.epoch == self.epochs:
                    yield TrainingProgress(
                        50.0 + 40.0 * result.epoch / self.epochs,
                        f"Training RSVP classifier (epoch {result.epoch}/{self.epochs})",
                    )
            classifier = collect_classifier(X_model.shape[1], epoch_results)

            yield TrainingProgress(90.0, "Assigning segments and predictions")
            probabilities = classifier.predict_proba(X_model)
            if not np.all(np.isfinite(probabilities)):
                raise DegenerateTrainingError("Classifier produced non-finite probabilities")

            training_metrics = evaluate_classifier(classifier, X_model, y)
            order = rank_clusters(cluster_model.labels, vectors, self.n_clusters)
            segment_of = dict(zip(order, segment_names(self.n_clusters)))
            thresholds = resolve_thresholds(probabilities, self.threshold_strategy)

            session = TrainingSession(
                org_id=org_id,
                window=window,
                total_events=total_events,
                vectors=[
                    v.with_results(label, p)
                    for v, label, p in zip(vectors, cluster_model.labels, probabilities)
                ],
                scaler=scaler,
                cluster_model=cluster_model,
                classifier=classifier,
                segment_of=segment_of,
                thresholds=thresholds,
                training_metrics=training_metrics,
            )
            self._session = session

            logger.info(
                f"Published session: thresholds high={thresholds.high:.3f}, "
                f"medium={thresholds.medium:.3f} ({thresholds.strategy})"
            )
            yield TrainingProgress(100.0, "Training complete")
        finally:
            self._training_lock.release()

    def train_models(
        self,
        on_progress: Optional[Callable[[float, str], None]] = None
    ) -> TrainingSession:
        """
        Train both models to completion.

        Args:
            on_progress: Optional callback(percent, stage) invoked per report

        Returns:
            The published TrainingSession
        """
        for progress in self.iter_training():
            if on_progress is not None:
                on_progress(progress.percent, progress.stage)
        return self._session

    @property
    def is_trained(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Optional[TrainingSession]:
        return self._session

    def _require_session(self) -> TrainingSession:
        session = self._session
        if session is None:
            raise ModelNotTrainedError("No trained session; call train_models() first")
        return session

    # ─────────────────────────────────────────────────────────────
    # RESULTS
    # ─────────────────────────────────────────────────────────────

    def get_all_user_features(self) -> List[UserFeatureVector]:
        """Staged feature vectors, without model results."""
        return list(self._staged_vectors)

    def _session_buckets(self, session: Optional[TrainingSession]) -> Dict[str, List[UserFeatureVector]]:
        names = segment_names(session.cluster_model.n_clusters if session else self.n_clusters)
        buckets = {name: [] for name in names}
        if session is None:
            return buckets
        for v in session.vectors:
            buckets[session.segment_of[v.cluster]].append(v)
        return buckets

    @staticmethod
    def _session_predictions(session: Optional[TrainingSession]) -> List[UserFeatureVector]:
        if session is None:
            return []
        return sorted(session.vectors, key=lambda v: v.predicted_probability, reverse=True)

    def get_clustered_users(self) -> Dict[str, List[UserFeatureVector]]:
        """
        Published members grouped into named buckets, lowest engagement first.

        Buckets are empty when no session has been trained.
        """
        return self._session_buckets(self._session)

    def get_user_predictions(self) -> List[UserFeatureVector]:
        """Published members sorted by predicted probability, highest first."""
        return self._session_predictions(self._session)

    def get_dynamic_thresholds(self) -> ProbabilityThresholds:
        """Thresholds of the published session (fixed cut points before training)."""
        session = self._session
        if session is None:
            return fixed_thresholds()
        return session.thresholds

    def classify_probability(self, probability: float) -> str:
        return self.get_dynamic_thresholds().classify(probability)

    def get_data_quality_report(self) -> DataQualityReport:
        """
        Quality report for the staged data, not the published session.

        It answers "can the loaded data be trained on?" and so is available
        before training. After loading a new organization or window it
        describes the new data while the other reports still describe the
        last published session; compare report.org_id with session.org_id.
        """
        return build_data_quality_report(
            self._staged_vectors,
            self._staged_total_events,
            min_members=self.min_members,
            org_id=self._staged_org_id,
        )

    def get_cluster_insights(self) -> List[ClusterInsight]:
        session = self._require_session()
        segment_clusters = {name: cluster_id for cluster_id, name in session.segment_of.items()}
        return build_cluster_insights(self._session_buckets(session), segment_clusters)

    def get_prediction_insights(self) -> PredictionInsights:
        session = self._require_session()
        return build_prediction_insights(
            self._session_predictions(session),
            session.thresholds,
            session.classifier.weights,
            session.training_metrics,
        )

    def export_to_csv(self) -> str:
        """CSV of the published table, or NO_DATA when untrained."""
        session = self._session
        if session is None:
            return NO_DATA
        return export_to_csv(session.vectors, session.segment_of, session.thresholds)

    def export_to_json(self) -> str:
        """JSON document of the published table, or NO_DATA when untrained."""
        session = self._session
        if session is None:
            return NO_DATA
        return export_to_json(
            session.vectors,
            session.segment_of,
            session.thresholds,
            org_id=session.org_id,
            window=session.window,
        )
