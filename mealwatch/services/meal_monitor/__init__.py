"""Meal Monitor: privacy-preserving meal attendance monitoring.

College dining systems push per-meal attendance. The service keeps only
a keyed pseudonym per student, compares recent attendance with a rolling
baseline, and sends a gentle, rate-limited check-in when a student's
eating pattern drops off.

This service provides:
- Deterministic anonymization and college-token authentication
- Rule-based, explainable anomaly scoring
- Cooldown-gated check-ins with escalation on "needs help"
- Student-controlled opt-out and data retention

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- POST /meal-attendance - Ingest one observation
- POST /meal-attendance/batch - Ingest a batch
- GET /meal-attendance/<anonymizedId>/patterns - Pattern query
- PUT /meal-attendance/<anonymizedId>/privacy - Privacy update
- POST /meal-attendance/<anonymizedId>/check-in/<checkInId>/response - Response
"""

from .config import MonitorConfig
from .store import MealMonitorStore, InMemoryMealMonitorStore
from .repositories import PostgresMealMonitorStore
from .pattern_detector import PatternDetector, PatternDetectionEngine
from .delivery import (
    DeliveryError,
    DeliveryWorker,
    LoggingTransport,
    NotificationTransport,
    SnsTransport,
)
from .check_in_orchestrator import (
    CheckInOrchestrator,
    CheckInOutcome,
    DeliveryOutcome,
    PrivacyUpdateOutcome,
    ResponseOutcome,
)
from .ingestion import IngestionService
from .handler import app

__all__ = [
    "MonitorConfig",
    "MealMonitorStore",
    "InMemoryMealMonitorStore",
    "PostgresMealMonitorStore",
    "PatternDetector",
    "PatternDetectionEngine",
    "DeliveryError",
    "DeliveryWorker",
    "LoggingTransport",
    "NotificationTransport",
    "SnsTransport",
    "CheckInOrchestrator",
    "CheckInOutcome",
    "DeliveryOutcome",
    "PrivacyUpdateOutcome",
    "ResponseOutcome",
    "IngestionService",
    "app",
]
