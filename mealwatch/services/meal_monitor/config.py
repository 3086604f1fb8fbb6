"""Meal Monitor configuration.

Window sizes, signal cut-offs and cooldown cadence. Every value that
changes who gets contacted and when lives here so it can be audited.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for pattern detection and check-in cadence."""

    # Decision threshold a signal must reach to count as an anomaly
    threshold: float = 0.7

    # Windows (days)
    lookback_days: int = 14             # Recent window
    baseline_days: int = 30             # Window preceding the recent one
    min_recent_records: int = 7

    # Consecutive misses: score = run / saturation once run >= minimum
    consecutive_miss_minimum: int = 3
    consecutive_miss_saturation: int = 5

    # Relative drop in attendance rate that makes frequency a candidate
    frequency_drop_minimum: float = 0.30

    # Distribution change that makes pattern/meal-type shift a candidate
    pattern_change_minimum: float = 0.5

    # Baseline refresh
    baseline_refresh_days: int = 7
    baseline_refresh_min_records: int = 14

    # Check-in cadence (hours)
    cooldown_hours: float = 24.0
    escalation_cooldown_hours: float = 2.0
    doing_fine_multiplier: float = 2.0

    # Tone/priority bands
    high_concern_score: float = 0.8
    medium_concern_score: float = 0.6

    # Privacy
    min_retention_days: int = 1
    max_retention_days: int = 365

    # Ingestion
    max_batch_size: int = 100

    # Delivery
    delivery_confirmation_delay_seconds: float = 1.0

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"Threshold must be 0.0-1.0, got {self.threshold}")
        if self.consecutive_miss_saturation <= 0:
            raise ValueError("consecutive_miss_saturation must be positive")

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Create config from environment variables.

        Environment variables:
            PATTERN_DETECTION_THRESHOLD: Decision threshold (default 0.7)
            CHECK_IN_COOLDOWN_HOURS: Standard cooldown (default 24)
            ESCALATION_COOLDOWN_HOURS: Cooldown after a needs_help follow-up (default 2)
            MAX_BATCH_SIZE: Largest accepted ingestion batch (default 100)
            DELIVERY_CONFIRMATION_DELAY_SECONDS: Delay before confirming delivery (default 1)
        """
        return cls(
            threshold=float(os.getenv("PATTERN_DETECTION_THRESHOLD", "0.7")),
            cooldown_hours=float(os.getenv("CHECK_IN_COOLDOWN_HOURS", "24")),
            escalation_cooldown_hours=float(os.getenv("ESCALATION_COOLDOWN_HOURS", "2")),
            max_batch_size=int(os.getenv("MAX_BATCH_SIZE", "100")),
            delivery_confirmation_delay_seconds=float(
                os.getenv("DELIVERY_CONFIRMATION_DELAY_SECONDS", "1")
            ),
        )
