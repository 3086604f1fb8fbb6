"""Ingestion service - the boundary between college systems and the monitor.

Flow for every attendance push:
1. Verify the college token
2. Anonymize the natural key (the real identifier is dropped here)
3. Create or touch the pseudonymous student
4. Store the observations (skipped entirely for opted-out students)
5. Run one pattern analysis
6. Trigger a check-in if the analysis found an anomaly

Every payload returned from here passes through ``sanitize_for_api``.
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from mealwatch.shared.database import ConnectionManager, DatabaseConfig
from mealwatch.shared.models import (
    AnomalyReason,
    BaselinePattern,
    CheckIn,
    PatternAnalysis,
    PrivacySettings,
)
from mealwatch.shared.utils import (
    AnonymizationService,
    is_valid_anonymized_id,
    sanitize_for_api,
)
from .check_in_orchestrator import CheckInOrchestrator
from .config import MonitorConfig
from .delivery import DeliveryWorker, LoggingTransport, NotificationTransport, SnsTransport
from .pattern_detector import PatternDetectionEngine
from .repositories import PostgresMealMonitorStore
from .store import InMemoryMealMonitorStore, MealMonitorStore

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Request could not be processed."""
    status_code = 500


class InvalidRequestError(IngestionError):
    status_code = 400


class AuthenticationFailedError(IngestionError):
    status_code = 401


class ResourceNotFoundError(IngestionError):
    status_code = 404


class ConflictError(IngestionError):
    status_code = 409


_RESPONSE_ERRORS = {
    "invalid_response_type": InvalidRequestError,
    "check_in_not_found": ResourceNotFoundError,
    "check_in_not_sent": ConflictError,
    "already_responded": ConflictError,
}


def _iso(when: Optional[datetime]) -> Optional[str]:
    return when.isoformat() + "Z" if when else None


def analysis_payload(analysis: PatternAnalysis) -> Dict[str, Any]:
    return analysis.to_dict()


def baseline_payload(baseline: BaselinePattern) -> Dict[str, Any]:
    return {
        "lastUpdated": _iso(baseline.last_updated),
        "averageMealsPerWeek": round(baseline.average_meals_per_week, 2),
        "preferredMealTimes": [
            {"mealType": p.meal_type.value, "start": p.start, "end": p.end}
            for p in baseline.preferred_meal_times
        ],
    }


def privacy_payload(settings: PrivacySettings) -> Dict[str, Any]:
    return {
        "optOut": settings.opt_out,
        "allowCheckIns": settings.allow_check_ins,
        "dataRetentionDays": settings.data_retention_days,
        "lastOptOutUpdate": _iso(settings.last_opt_out_update),
    }


def check_in_summary(check_in: CheckIn) -> Dict[str, Any]:
    """Public view of a check-in; carries no identity."""
    return {
        "checkInId": check_in.check_in_id,
        "type": check_in.check_in_data.type.value,
        "message": check_in.check_in_data.message,
        "tone": check_in.check_in_data.tone.value,
        "createdAt": _iso(check_in.created_at),
        "responseReceived": check_in.response.received,
    }


def store_from_env() -> MealMonitorStore:
    """Store selected by MEAL_MONITOR_STORE ("postgres" or in-memory)."""
    if os.getenv("MEAL_MONITOR_STORE", "memory") == "postgres":
        return PostgresMealMonitorStore(ConnectionManager(DatabaseConfig.from_env()))
    return InMemoryMealMonitorStore()


class IngestionService:
    """Accepts attendance from college systems and answers pattern queries."""

    def __init__(
        self,
        anonymizer: AnonymizationService,
        engine: PatternDetectionEngine,
        orchestrator: CheckInOrchestrator,
        config: Optional[MonitorConfig] = None,
    ):
        """Initialize service with dependencies.

        Args:
            anonymizer: Natural-key and college-token hashing
            engine: Pattern detection engine (owns attendance writes)
            orchestrator: Check-in orchestrator (owns check-in writes)
            config: Monitor configuration
        """
        self.anonymizer = anonymizer
        self.engine = engine
        self.orchestrator = orchestrator
        self.config = config or engine.config

    @classmethod
    def from_env(cls) -> "IngestionService":
        """Build the service from environment variables.

        Environment variables:
            MEAL_MONITOR_STORE: "postgres" for the database store (default in-memory)
            CHECK_IN_TOPIC_ARN: SNS topic for check-ins (default log only)
            plus those read by MonitorConfig, DatabaseConfig and
            AnonymizationService
        """
        config = MonitorConfig.from_env()
        store = store_from_env()

        transport: NotificationTransport
        topic_arn = os.getenv("CHECK_IN_TOPIC_ARN")
        transport = SnsTransport(topic_arn) if topic_arn else LoggingTransport()

        worker = DeliveryWorker(delay_seconds=config.delivery_confirmation_delay_seconds)
        worker.start()

        return cls(
            anonymizer=AnonymizationService.from_env(),
            engine=PatternDetectionEngine(store, config),
            orchestrator=CheckInOrchestrator(store, config, transport=transport, worker=worker),
            config=config,
        )

    @property
    def store(self) -> MealMonitorStore:
        return self.engine.store

    def ingest(
        self,
        college_token: str,
        college_id: str,
        meals: List[Dict[str, Any]],
        college_system: str,
        sync_timestamp: Optional[datetime] = None,
        enrollment_year: Optional[str] = None,
        department: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ingest one or more meal observations for a student.

        Args:
            college_token: Token proving which college is sending
            college_id: The college's own student key (never stored)
            meals: Observations with date, meal_type, attended, timestamp
            college_system: Name of the sending system
            sync_timestamp: When the college synced the data
            enrollment_year: Optional part of the natural key
            department: Optional part of the natural key

        Returns:
            Sanitized result payload

        Raises:
            InvalidRequestError: Empty or oversized batch
            AuthenticationFailedError: Token does not match the college key
        """
        if not meals or len(meals) > self.config.max_batch_size:
            raise InvalidRequestError(
                f"Batch must contain 1-{self.config.max_batch_size} meal records"
            )

        if not self.anonymizer.verify_college_token(college_token, college_id):
            logger.warning(
                "INGESTION_AUTH_FAILED",
                extra={"college_system": college_system}
            )
            raise AuthenticationFailedError("Invalid college token")

        anonymized_id = self.anonymizer.create_anonymized_id(
            college_id,
            enrollment_year=enrollment_year or "unknown",
            department=department or "unknown",
        )
        student, _ = self.engine.ensure_student(anonymized_id, college_token)

        if student.privacy_settings.opt_out:
            logger.info(
                "INGESTION_SKIPPED_OPTED_OUT",
                extra={"anonymized_id": anonymized_id, "record_count": len(meals)}
            )
            return sanitize_for_api({
                "success": True,
                "anonymizedId": anonymized_id,
                "dataStored": False,
                "recordsProcessed": 0,
                "patternAnalysis": analysis_payload(
                    PatternAnalysis.neutral(AnomalyReason.STUDENT_OPTED_OUT)
                ),
                "checkInTriggered": False,
            })

        records = self.engine.record_attendance(
            anonymized_id,
            meals,
            college_system=college_system,
            sync_timestamp=sync_timestamp,
        )
        analysis = self.engine.analyze_patterns(anonymized_id)

        check_in_triggered = False
        if analysis.is_anomaly:
            outcome = self.orchestrator.trigger_check_in(anonymized_id, analysis)
            check_in_triggered = outcome.success

        logger.info(
            "INGESTION_COMPLETED",
            extra={
                "anonymized_id": anonymized_id,
                "records_processed": len(records),
                "is_anomaly": analysis.is_anomaly,
                "check_in_triggered": check_in_triggered,
            }
        )

        return sanitize_for_api({
            "success": True,
            "anonymizedId": anonymized_id,
            "dataStored": True,
            "recordsProcessed": len(records),
            "patternAnalysis": analysis_payload(analysis),
            "checkInTriggered": check_in_triggered,
        })

    def get_patterns(self, anonymized_id: str, history_limit: int = 10) -> Dict[str, Any]:
        """Current analysis, baseline, recent check-ins and privacy settings."""
        student = self._require_student(anonymized_id)
        analysis = self.engine.analyze_patterns(anonymized_id)
        history = self.orchestrator.get_check_in_history(anonymized_id, limit=history_limit)

        return sanitize_for_api({
            "anonymizedId": anonymized_id,
            "patternAnalysis": analysis_payload(analysis),
            "baselinePattern": baseline_payload(student.baseline_pattern),
            "recentCheckIns": [check_in_summary(c) for c in history],
            "privacySettings": privacy_payload(student.privacy_settings),
        })

    def update_privacy(
        self,
        anonymized_id: str,
        opt_out: Optional[bool] = None,
        allow_check_ins: Optional[bool] = None,
        data_retention_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Apply a privacy update and echo the resulting settings."""
        self._check_id(anonymized_id)
        outcome = self.orchestrator.update_privacy_preferences(
            anonymized_id,
            opt_out=opt_out,
            allow_check_ins=allow_check_ins,
            data_retention_days=data_retention_days,
        )
        if outcome.reason == "student_not_found":
            raise ResourceNotFoundError("Student not found")
        if outcome.reason == "invalid_retention_days":
            raise InvalidRequestError(
                f"dataRetentionDays must be an integer between "
                f"{self.config.min_retention_days} and {self.config.max_retention_days}"
            )
        if not outcome.success:
            raise IngestionError("Privacy update failed")

        return sanitize_for_api({
            "success": True,
            "anonymizedId": anonymized_id,
            "privacySettings": privacy_payload(outcome.privacy_settings),
            "dataExpiryDate": _iso(outcome.data_expiry_date),
        })

    def respond_to_check_in(
        self,
        anonymized_id: str,
        check_in_id: str,
        response_type: str,
        response_text: str = "",
    ) -> Dict[str, Any]:
        """Record a student's response to one of their check-ins."""
        self._check_id(anonymized_id)
        outcome = self.orchestrator.handle_check_in_response(
            check_in_id,
            response_type,
            text=response_text,
            anonymized_id=anonymized_id,
        )
        if not outcome.success:
            error = _RESPONSE_ERRORS.get(outcome.reason, IngestionError)
            raise error(outcome.reason)

        return sanitize_for_api({
            "success": True,
            "reason": outcome.reason,
            "followUpCheckInId": outcome.follow_up_check_in_id,
            "nextAllowedCheckIn": _iso(outcome.next_allowed_check_in),
        })

    def _check_id(self, anonymized_id: str) -> None:
        if not is_valid_anonymized_id(anonymized_id):
            raise InvalidRequestError("Malformed anonymizedId")

    def _require_student(self, anonymized_id: str):
        self._check_id(anonymized_id)
        student = self.store.get_student(anonymized_id)
        if student is None:
            raise ResourceNotFoundError("Student not found")
        return student
