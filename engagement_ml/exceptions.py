"""
Error taxonomy for the engagement analytics engine.

All failures are reported to the caller as one of these types; nothing
is retried automatically.
"""


class EngagementAnalyticsError(Exception):
    """Base error for the engagement analytics engine."""
    pass


class InsufficientDataError(EngagementAnalyticsError):
    """Training was requested below the minimum sample floor or with no activity."""

    def __init__(self, message: str, member_count: int = 0, active_count: int = 0):
        super().__init__(message)
        self.member_count = member_count
        self.active_count = active_count


class DataFetchError(EngagementAnalyticsError):
    """The upstream event/membership query failed."""
    pass


class DegenerateTrainingError(EngagementAnalyticsError):
    """Training produced non-finite centroids or probabilities."""
    pass


class TrainingInProgressError(EngagementAnalyticsError):
    """A second training run was started while one is still executing."""
    pass


class ModelNotTrainedError(EngagementAnalyticsError):
    """A report was requested before any training run completed."""
    pass
