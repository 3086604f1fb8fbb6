"""Check-in orchestrator - gates, composes and tracks supportive check-ins.

Per check-in state machine:
    pending -> sent -> delivered
    pending -> failed

A check-in is only created when both gates pass:
1. Privacy: the student has not opted out and allows check-ins
2. Cooldown: the student's most recent pending/sent/delivered check-in
   has a next_allowed_check_in that is not in the future

The cooldown gate and the insert are one atomic store operation.

Every public method returns a structured outcome with an explicit
``reason``; nothing raises to the caller.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from mealwatch.shared.models import (
    AnomalyReason,
    CheckIn,
    CheckInData,
    CheckInPriority,
    CheckInResponse,
    CheckInTone,
    CheckInType,
    Cooldown,
    CooldownReason,
    Delivery,
    DeliveryStatus,
    PatternAnalysis,
    PrivacySettings,
    ResponseType,
)
from .config import MonitorConfig
from .delivery import DeliveryWorker, LoggingTransport, NotificationTransport
from .message_templates import FOLLOW_UP_MESSAGE, compose_message
from .store import MealMonitorStore

logger = logging.getLogger(__name__)

_MEAL_CONCERN_REASONS = frozenset({
    AnomalyReason.MISSED_CONSECUTIVE,
    AnomalyReason.FREQUENCY_DROP,
})


@dataclass(frozen=True)
class CheckInOutcome:
    """Result of a trigger attempt."""
    success: bool
    reason: str
    check_in_id: Optional[str] = None
    message: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    next_allowed_check_in: Optional[datetime] = None


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    reason: str
    status: Optional[DeliveryStatus] = None
    receipt: Optional[str] = None


@dataclass(frozen=True)
class ResponseOutcome:
    success: bool
    reason: str
    follow_up_check_in_id: Optional[str] = None
    next_allowed_check_in: Optional[datetime] = None


@dataclass(frozen=True)
class PrivacyUpdateOutcome:
    success: bool
    reason: str
    privacy_settings: Optional[PrivacySettings] = None
    data_expiry_date: Optional[datetime] = None


def classify_check_in_type(reason: AnomalyReason) -> CheckInType:
    """Map the anomaly reason onto the kind of check-in sent."""
    if reason in _MEAL_CONCERN_REASONS:
        return CheckInType.MEAL_CONCERN
    if reason is AnomalyReason.PATTERN_CHANGE:
        return CheckInType.WELLNESS_CHECK
    return CheckInType.SUPPORT_OFFER


def classify_tone(score: float, config: MonitorConfig) -> Tuple[CheckInTone, CheckInPriority]:
    """Tone and priority for an anomaly score.

    Higher concern gets the gentler tone.
    """
    if score >= config.high_concern_score:
        return CheckInTone.GENTLE, CheckInPriority.HIGH
    if score >= config.medium_concern_score:
        return CheckInTone.SUPPORTIVE, CheckInPriority.MEDIUM
    return CheckInTone.ENCOURAGING, CheckInPriority.LOW


def new_check_in_id() -> str:
    return f"checkin_{uuid.uuid4().hex[:16]}"


class CheckInOrchestrator:
    """Decides whether to contact a student and tracks what happened.

    Only writer of check-ins and of students' privacy settings.
    """

    def __init__(
        self,
        store: MealMonitorStore,
        config: Optional[MonitorConfig] = None,
        transport: Optional[NotificationTransport] = None,
        worker: Optional[DeliveryWorker] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize orchestrator with dependencies.

        Args:
            store: Student/check-in store
            config: Cadence and tone configuration
            transport: Notification transport (defaults to logging only)
            worker: Delivery confirmation worker
            rng: Random source for template selection (seed for tests)
            clock: Source of the current UTC time (injected for testing)
        """
        self.store = store
        self.config = config or MonitorConfig()
        self.transport = transport or LoggingTransport()
        self.worker = worker or DeliveryWorker(
            delay_seconds=self.config.delivery_confirmation_delay_seconds,
        )
        self.worker.bind(self._complete_delivery)
        self.rng = rng or random.Random()
        self.clock = clock or datetime.utcnow

        logger.info(
            "CHECK_IN_ORCHESTRATOR_INITIALIZED",
            extra={
                "cooldown_hours": self.config.cooldown_hours,
                "escalation_cooldown_hours": self.config.escalation_cooldown_hours,
                "transport": type(self.transport).__name__,
            }
        )

    def trigger_check_in(
        self,
        anonymized_id: str,
        analysis: PatternAnalysis,
    ) -> CheckInOutcome:
        """Create and send a check-in if the student's gates allow it.

        Args:
            anonymized_id: Student to contact
            analysis: Verdict that prompted the check-in

        Returns:
            CheckInOutcome; ``reason`` is one of check_in_created,
            student_not_found, student_opted_out, cooldown_active, system_error

        Logs:
            - CHECK_IN_BLOCKED: When a gate rejects the attempt
            - CHECK_IN_CREATED: After the check-in was stored
        """
        try:
            return self._trigger(anonymized_id, analysis)
        except Exception as e:
            logger.error(
                "CHECK_IN_TRIGGER_FAILED",
                extra={
                    "anonymized_id": anonymized_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return CheckInOutcome(success=False, reason="system_error")

    def _trigger(self, anonymized_id: str, analysis: PatternAnalysis) -> CheckInOutcome:
        # Re-read on every call so privacy changes apply immediately
        student = self.store.get_student(anonymized_id)
        if student is None:
            return self._blocked(anonymized_id, "student_not_found")
        if not student.privacy_settings.check_ins_permitted:
            return self._blocked(anonymized_id, "student_opted_out")

        now = self.clock()
        check_in_type = classify_check_in_type(analysis.reason)
        tone, priority = classify_tone(analysis.score, self.config)
        message = compose_message(check_in_type, tone, analysis, self.rng)

        check_in = CheckIn(
            check_in_id=new_check_in_id(),
            student_anonymized_id=anonymized_id,
            check_in_data=CheckInData(
                type=check_in_type,
                message=message,
                tone=tone,
                priority=priority,
            ),
            cooldown=Cooldown(
                next_allowed_check_in=now + timedelta(hours=self.config.cooldown_hours),
                reason=CooldownReason.SYSTEM_COOLDOWN,
            ),
            created_at=now,
            delivery=Delivery(method=self.transport.method),
        )

        blocking = self.store.insert_check_in_if_clear(check_in, now)
        if blocking is not None:
            return self._blocked(
                anonymized_id,
                "cooldown_active",
                next_allowed=blocking.cooldown.next_allowed_check_in,
            )

        logger.info(
            "CHECK_IN_CREATED",
            extra={
                "anonymized_id": anonymized_id,
                "check_in_id": check_in.check_in_id,
                "type": check_in_type.value,
                "tone": tone.value,
                "priority": priority.value,
                "anomaly_reason": analysis.reason.value,
            }
        )

        delivery = self.send_check_in(check_in)
        return CheckInOutcome(
            success=True,
            reason="check_in_created",
            check_in_id=check_in.check_in_id,
            message=message,
            delivery_status=delivery.status,
            next_allowed_check_in=check_in.cooldown.next_allowed_check_in,
        )

    def _blocked(
        self,
        anonymized_id: str,
        reason: str,
        next_allowed: Optional[datetime] = None,
    ) -> CheckInOutcome:
        logger.warning(
            "CHECK_IN_BLOCKED",
            extra={
                "anonymized_id": anonymized_id,
                "reason": reason,
                "next_allowed_check_in": next_allowed.isoformat() if next_allowed else None,
            }
        )
        return CheckInOutcome(
            success=False,
            reason=reason,
            next_allowed_check_in=next_allowed,
        )

    def send_check_in(self, check_in: CheckIn) -> DeliveryOutcome:
        """Hand a pending check-in to the transport.

        On success the check-in becomes ``sent`` and a delivery
        confirmation is queued; on failure it becomes ``failed`` with the
        transport's reason. A failed attempt does not hold the cooldown.
        """
        check_in_id = check_in.check_in_id
        try:
            current = self.store.get_check_in(check_in_id)
            if current is None:
                return DeliveryOutcome(success=False, reason="check_in_not_found")
            if current.delivery.status is not DeliveryStatus.PENDING:
                return DeliveryOutcome(
                    success=False,
                    reason="not_pending",
                    status=current.delivery.status,
                )

            try:
                receipt = self.transport.deliver(
                    current.check_in_data.message,
                    current.student_anonymized_id,
                )
            except Exception as e:
                self.store.transition_delivery(
                    check_in_id,
                    DeliveryStatus.PENDING,
                    DeliveryStatus.FAILED,
                    self.clock(),
                    failure_reason=str(e),
                )
                logger.error(
                    "CHECK_IN_DELIVERY_FAILED",
                    extra={"check_in_id": check_in_id, "error": str(e)}
                )
                return DeliveryOutcome(
                    success=False,
                    reason="delivery_failed",
                    status=DeliveryStatus.FAILED,
                )

            self.store.transition_delivery(
                check_in_id,
                DeliveryStatus.PENDING,
                DeliveryStatus.SENT,
                self.clock(),
            )
            self.worker.schedule_confirmation(check_in_id)

            logger.info(
                "CHECK_IN_SENT",
                extra={"check_in_id": check_in_id, "receipt": receipt}
            )
            return DeliveryOutcome(
                success=True,
                reason="sent",
                status=DeliveryStatus.SENT,
                receipt=receipt,
            )

        except Exception as e:
            logger.error(
                "CHECK_IN_SEND_ERROR",
                extra={
                    "check_in_id": check_in_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return DeliveryOutcome(success=False, reason="system_error")

    def confirm_delivery(self, check_in_id: str) -> bool:
        """Mark a sent check-in delivered.

        Returns:
            True only for the call that performed the transition
        """
        try:
            return self._complete_delivery(check_in_id)
        except Exception as e:
            logger.error(
                "DELIVERY_CONFIRMATION_ERROR",
                extra={"check_in_id": check_in_id, "error": str(e)}
            )
            return False

    def _complete_delivery(self, check_in_id: str) -> bool:
        # Worker callback; store errors propagate so the worker can retry
        changed = self.store.transition_delivery(
            check_in_id,
            DeliveryStatus.SENT,
            DeliveryStatus.DELIVERED,
            self.clock(),
        )
        if changed:
            logger.info("CHECK_IN_DELIVERED", extra={"check_in_id": check_in_id})
        return changed

    def handle_check_in_response(
        self,
        check_in_id: str,
        response_type: Union[ResponseType, str],
        text: str = "",
        anonymized_id: Optional[str] = None,
    ) -> ResponseOutcome:
        """Record a student's response and apply its effect.

        - needs_help: send one high-priority support offer with a short cooldown
        - doing_fine: stretch the responded check-in's cooldown
        - acknowledged / no_response: nothing further

        Args:
            check_in_id: Check-in being answered
            response_type: ResponseType or its string value
            text: Optional free text from the student
            anonymized_id: When given, the check-in must belong to this student
        """
        try:
            response = ResponseType(response_type)
        except ValueError:
            return ResponseOutcome(success=False, reason="invalid_response_type")

        try:
            return self._handle_response(check_in_id, response, text, anonymized_id)
        except Exception as e:
            logger.error(
                "CHECK_IN_RESPONSE_FAILED",
                extra={
                    "check_in_id": check_in_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return ResponseOutcome(success=False, reason="system_error")

    def _handle_response(
        self,
        check_in_id: str,
        response: ResponseType,
        text: str,
        anonymized_id: Optional[str],
    ) -> ResponseOutcome:
        check_in = self.store.get_check_in(check_in_id)
        if check_in is None or (
            anonymized_id is not None and check_in.student_anonymized_id != anonymized_id
        ):
            return ResponseOutcome(success=False, reason="check_in_not_found")
        if check_in.delivery.status not in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED):
            return ResponseOutcome(success=False, reason="check_in_not_sent")
        if check_in.response.received:
            return ResponseOutcome(success=False, reason="already_responded")

        now = self.clock()
        recorded = self.store.record_response(
            check_in_id,
            CheckInResponse(
                received=True,
                response_type=response,
                response_text=text,
                responded_at=now,
            ),
        )
        if not recorded:
            # A concurrent response won the conditional write
            return ResponseOutcome(success=False, reason="already_responded")

        logger.info(
            "CHECK_IN_RESPONSE_RECORDED",
            extra={
                "check_in_id": check_in_id,
                "anonymized_id": check_in.student_anonymized_id,
                "response_type": response.value,
            }
        )

        if response is ResponseType.NEEDS_HELP:
            return self._escalate(check_in, now)

        if response is ResponseType.DOING_FINE:
            cooldown = Cooldown(
                next_allowed_check_in=now + timedelta(
                    hours=self.config.cooldown_hours * self.config.doing_fine_multiplier
                ),
                reason=CooldownReason.STUDENT_DOING_WELL,
            )
            self.store.update_cooldown(check_in_id, cooldown)
            return ResponseOutcome(
                success=True,
                reason="cooldown_extended",
                next_allowed_check_in=cooldown.next_allowed_check_in,
            )

        return ResponseOutcome(
            success=True,
            reason="response_recorded",
            next_allowed_check_in=check_in.cooldown.next_allowed_check_in,
        )

    def _escalate(self, check_in: CheckIn, now: datetime) -> ResponseOutcome:
        # Bypasses the cooldown gate: the student asked for help
        follow_up = CheckIn(
            check_in_id=new_check_in_id(),
            student_anonymized_id=check_in.student_anonymized_id,
            check_in_data=CheckInData(
                type=CheckInType.SUPPORT_OFFER,
                message=FOLLOW_UP_MESSAGE,
                tone=CheckInTone.SUPPORTIVE,
                priority=CheckInPriority.HIGH,
            ),
            cooldown=Cooldown(
                next_allowed_check_in=now + timedelta(hours=self.config.escalation_cooldown_hours),
                reason=CooldownReason.FOLLOW_UP_RESPONSE,
            ),
            created_at=now,
            delivery=Delivery(method=self.transport.method),
        )
        self.store.save_check_in(follow_up)

        logger.warning(
            "CHECK_IN_ESCALATED",
            extra={
                "anonymized_id": check_in.student_anonymized_id,
                "check_in_id": check_in.check_in_id,
                "follow_up_check_in_id": follow_up.check_in_id,
            }
        )

        self.send_check_in(follow_up)
        return ResponseOutcome(
            success=True,
            reason="follow_up_created",
            follow_up_check_in_id=follow_up.check_in_id,
            next_allowed_check_in=follow_up.cooldown.next_allowed_check_in,
        )

    def update_privacy_preferences(
        self,
        anonymized_id: str,
        opt_out: Optional[bool] = None,
        allow_check_ins: Optional[bool] = None,
        data_retention_days: Optional[int] = None,
    ) -> PrivacyUpdateOutcome:
        """Change a student's privacy settings.

        Only the provided fields change. The data expiry date is always
        recomputed from the (possibly new) retention period.
        """
        if data_retention_days is not None and not self._valid_retention(data_retention_days):
            return PrivacyUpdateOutcome(success=False, reason="invalid_retention_days")

        try:
            student = self.store.update_privacy(
                anonymized_id,
                self.clock(),
                opt_out=None if opt_out is None else bool(opt_out),
                allow_check_ins=None if allow_check_ins is None else bool(allow_check_ins),
                data_retention_days=data_retention_days,
            )
        except Exception as e:
            logger.error(
                "PRIVACY_UPDATE_FAILED",
                extra={"anonymized_id": anonymized_id, "error": str(e)}
            )
            return PrivacyUpdateOutcome(success=False, reason="system_error")

        if student is None:
            return PrivacyUpdateOutcome(success=False, reason="student_not_found")

        settings = student.privacy_settings
        if settings.opt_out:
            logger.warning("STUDENT_OPTED_OUT", extra={"anonymized_id": anonymized_id})

        logger.info(
            "PRIVACY_PREFERENCES_UPDATED",
            extra={
                "anonymized_id": anonymized_id,
                "opt_out": settings.opt_out,
                "allow_check_ins": settings.allow_check_ins,
                "data_retention_days": settings.data_retention_days,
            }
        )
        return PrivacyUpdateOutcome(
            success=True,
            reason="updated",
            privacy_settings=settings,
            data_expiry_date=student.data_expiry_date,
        )

    def _valid_retention(self, days) -> bool:
        if isinstance(days, bool) or not isinstance(days, int):
            return False
        return self.config.min_retention_days <= days <= self.config.max_retention_days

    def get_check_in_history(self, anonymized_id: str, limit: int = 10) -> List[CheckIn]:
        """Recent check-ins of a student, newest first."""
        try:
            return self.store.find_check_ins(anonymized_id, limit=limit)
        except Exception as e:
            logger.error(
                "CHECK_IN_HISTORY_FAILED",
                extra={"anonymized_id": anonymized_id, "error": str(e)}
            )
            return []
