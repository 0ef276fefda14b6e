"""
Configuration management for the engagement analytics engine.

Loads environment variables and validates required settings.
"""

import os
from dotenv import load_dotenv
from typing import Optional

# Load environment variables from .env file
load_dotenv()


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration class for the engagement analytics engine."""

    # Supabase credentials (required for live data fetches only)
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_SERVICE_ROLE_KEY: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # Source tables
    POSTS_TABLE: str = "posts"
    INTERACTIONS_TABLE: str = "reward_log"
    MEMBERS_TABLE: str = "org_members"
    USERS_TABLE: str = "users"

    # Data sufficiency
    MIN_MEMBERS: int = _env_int("MIN_MEMBERS", 10)  # Minimum roster size before training

    # Clustering configuration
    N_CLUSTERS: int = _env_int("N_CLUSTERS", 3)  # Number of behavioral segments
    KMEANS_ITERATIONS: int = _env_int("KMEANS_ITERATIONS", 100)  # Lloyd rounds per run
    KMEANS_RESTARTS: int = _env_int("KMEANS_RESTARTS", 5)  # Independent runs, lowest inertia kept

    # Classifier configuration
    LEARNING_RATE: float = _env_float("LEARNING_RATE", 0.1)
    EPOCHS: int = _env_int("EPOCHS", 500)  # Full-batch gradient descent steps

    # Shared training configuration
    RANDOM_SEED: Optional[int] = _env_int("RANDOM_SEED", None)  # None = not reproducible
    SCALE_FEATURES: bool = _env_bool("SCALE_FEATURES", True)

    # Probability thresholds
    THRESHOLD_STRATEGY: str = os.getenv("THRESHOLD_STRATEGY", "dynamic")  # "dynamic" or "fixed"
    HIGH_PERCENTILE: float = _env_float("HIGH_PERCENTILE", 75.0)
    MEDIUM_PERCENTILE: float = _env_float("MEDIUM_PERCENTILE", 40.0)
    FIXED_HIGH_THRESHOLD: float = 0.7
    FIXED_MEDIUM_THRESHOLD: float = 0.4

    # Default time window selector
    DEFAULT_TIME_WINDOW: str = os.getenv("DEFAULT_TIME_WINDOW", "last-30-days")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """
        Validate that all required configuration is present.

        Raises:
            ValueError: If required configuration is missing.
        """
        missing = []

        if not cls.SUPABASE_URL:
            missing.append("SUPABASE_URL")
        if not cls.SUPABASE_SERVICE_ROLE_KEY:
            missing.append("SUPABASE_SERVICE_ROLE_KEY")

        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}. "
                f"Please create a .env file with these values (see .env.example)."
            )

        if cls.THRESHOLD_STRATEGY not in ("dynamic", "fixed"):
            raise ValueError(
                f"THRESHOLD_STRATEGY must be 'dynamic' or 'fixed', got '{cls.THRESHOLD_STRATEGY}'"
            )
