"""Tests for CheckInOrchestrator: gating, composition, delivery and responses."""
import random
import threading
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from mealwatch.shared.models import (
    AnomalyReason,
    CheckInPriority,
    CheckInTone,
    CheckInType,
    CooldownReason,
    DeliveryStatus,
    PatternAnalysis,
    ResponseType,
    Student,
)
from mealwatch.services.meal_monitor.check_in_orchestrator import (
    CheckInOrchestrator,
    classify_check_in_type,
    classify_tone,
    new_check_in_id,
)
from mealwatch.services.meal_monitor.config import MonitorConfig
from mealwatch.services.meal_monitor.delivery import (
    DeliveryError,
    DeliveryWorker,
    LoggingTransport,
    NotificationTransport,
)
from mealwatch.services.meal_monitor.message_templates import FOLLOW_UP_MESSAGE, MESSAGE_TEMPLATES
from mealwatch.services.meal_monitor.store import InMemoryMealMonitorStore, MealMonitorStore

NOW = datetime(2024, 3, 15, 12, 0, 0)
STUDENT_ID = "0123456789abcdef"
OTHER_ID = "fedcba9876543210"

MISSED_MEALS = PatternAnalysis(
    is_anomaly=True,
    reason=AnomalyReason.MISSED_CONSECUTIVE,
    score=1.0,
    details={"max_consecutive_misses": 5},
)


class UnreachableTransport(NotificationTransport):

    def deliver(self, message, recipient_token):
        raise DeliveryError("device unreachable")


class RendezvousStore(InMemoryMealMonitorStore):
    """Holds readers of one check-in until two of them have read it."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.held_check_in_id = None
        self.barrier = threading.Barrier(2, timeout=5)

    def get_check_in(self, check_in_id):
        check_in = super().get_check_in(check_in_id)
        if check_in_id == self.held_check_in_id:
            self.barrier.wait()
        return check_in


@pytest.fixture
def worker(monotonic):
    return DeliveryWorker(delay_seconds=1.0, time_source=monotonic)


@pytest.fixture
def orchestrator(store, worker, clock):
    store.save_student(Student.new(STUDENT_ID, "college-token", clock.now))
    return CheckInOrchestrator(
        store,
        MonitorConfig(),
        transport=LoggingTransport(),
        worker=worker,
        rng=random.Random(7),
        clock=clock,
    )


@pytest.fixture
def sent_check_in(orchestrator, clock):
    outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)
    assert outcome.success is True
    clock.advance(hours=1)
    return outcome.check_in_id


class TestClassification:

    @pytest.mark.parametrize("reason,expected", [
        (AnomalyReason.MISSED_CONSECUTIVE, CheckInType.MEAL_CONCERN),
        (AnomalyReason.FREQUENCY_DROP, CheckInType.MEAL_CONCERN),
        (AnomalyReason.PATTERN_CHANGE, CheckInType.WELLNESS_CHECK),
        (AnomalyReason.NONE, CheckInType.SUPPORT_OFFER),
    ])
    def test_check_in_type(self, reason, expected):
        assert classify_check_in_type(reason) is expected

    @pytest.mark.parametrize("score,tone,priority", [
        (1.0, CheckInTone.GENTLE, CheckInPriority.HIGH),
        (0.8, CheckInTone.GENTLE, CheckInPriority.HIGH),
        (0.79, CheckInTone.SUPPORTIVE, CheckInPriority.MEDIUM),
        (0.6, CheckInTone.SUPPORTIVE, CheckInPriority.MEDIUM),
        (0.59, CheckInTone.ENCOURAGING, CheckInPriority.LOW),
        (0.0, CheckInTone.ENCOURAGING, CheckInPriority.LOW),
    ])
    def test_tone_bands(self, score, tone, priority):
        assert classify_tone(score, MonitorConfig()) == (tone, priority)

    def test_check_in_id_format(self):
        check_in_id = new_check_in_id()

        assert check_in_id.startswith("checkin_")
        assert len(check_in_id) == len("checkin_") + 16
        assert new_check_in_id() != check_in_id


class TestTriggerCheckIn:

    def test_creates_and_sends(self, orchestrator, store, clock):
        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert outcome.success is True
        assert outcome.reason == "check_in_created"
        assert outcome.delivery_status is DeliveryStatus.SENT
        assert outcome.next_allowed_check_in == clock.now + timedelta(hours=24)

        stored = store.get_check_in(outcome.check_in_id)
        assert stored.check_in_data.type is CheckInType.MEAL_CONCERN
        assert stored.check_in_data.tone is CheckInTone.GENTLE
        assert stored.check_in_data.priority is CheckInPriority.HIGH
        assert stored.cooldown.reason is CooldownReason.SYSTEM_COOLDOWN
        assert stored.delivery.status is DeliveryStatus.SENT

    def test_message_uses_template_and_data_clause(self, orchestrator):
        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        templates = MESSAGE_TEMPLATES[CheckInType.MEAL_CONCERN][CheckInTone.GENTLE]
        assert any(outcome.message.startswith(t) for t in templates)
        assert outcome.message.endswith("We noticed you've missed 5 meals in a row.")

    def test_seeded_rng_is_reproducible(self, clock):
        messages = []
        for _ in range(2):
            store = MagicMock(spec=MealMonitorStore)
            store.get_student.return_value = Student.new(STUDENT_ID, "college-token", NOW)
            store.insert_check_in_if_clear.return_value = None
            store.get_check_in.return_value = None
            orchestrator = CheckInOrchestrator(store, rng=random.Random(42), clock=clock)
            messages.append(orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).message)

        assert messages[0] == messages[1]

    def test_unknown_student(self, orchestrator):
        outcome = orchestrator.trigger_check_in(OTHER_ID, MISSED_MEALS)

        assert outcome.success is False
        assert outcome.reason == "student_not_found"

    def test_cooldown_blocks_second_trigger(self, orchestrator, store, clock):
        first = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)
        clock.advance(hours=2)

        second = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert second.success is False
        assert second.reason == "cooldown_active"
        assert second.next_allowed_check_in == first.next_allowed_check_in
        assert len(store.find_check_ins(STUDENT_ID)) == 1

    def test_allowed_once_cooldown_elapses(self, orchestrator, store, clock):
        first = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)
        clock.now = first.next_allowed_check_in

        second = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert second.success is True
        assert len(store.find_check_ins(STUDENT_ID)) == 2

    def test_opted_out_student_never_contacted(self, orchestrator, store):
        orchestrator.update_privacy_preferences(STUDENT_ID, opt_out=True)

        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert outcome.success is False
        assert outcome.reason == "student_opted_out"
        assert store.find_check_ins(STUDENT_ID) == []

    def test_check_ins_disabled(self, orchestrator, store):
        orchestrator.update_privacy_preferences(STUDENT_ID, allow_check_ins=False)

        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert outcome.reason == "student_opted_out"
        assert store.find_check_ins(STUDENT_ID) == []

    def test_failed_delivery_does_not_hold_cooldown(self, store, worker, clock):
        store.save_student(Student.new(STUDENT_ID, "college-token", clock.now))
        orchestrator = CheckInOrchestrator(
            store, transport=UnreachableTransport(), worker=worker, clock=clock
        )

        first = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert first.success is True
        assert first.delivery_status is DeliveryStatus.FAILED
        stored = store.get_check_in(first.check_in_id)
        assert stored.delivery.status is DeliveryStatus.FAILED
        assert stored.delivery.failure_reason == "device unreachable"
        assert worker.pending_count == 0

        orchestrator.transport = LoggingTransport()
        second = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)
        assert second.success is True
        assert second.delivery_status is DeliveryStatus.SENT

    def test_storage_failure(self, clock):
        broken = MagicMock(spec=MealMonitorStore)
        broken.get_student.side_effect = RuntimeError("connection lost")
        orchestrator = CheckInOrchestrator(broken, clock=clock)

        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert outcome.success is False
        assert outcome.reason == "system_error"


class TestDelivery:

    def test_worker_confirms_delivery(self, orchestrator, store, worker, monotonic, clock):
        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)
        clock.advance(seconds=1)
        monotonic.value = 1.0

        assert worker.run_pending() == 1

        delivery = store.get_check_in(outcome.check_in_id).delivery
        assert delivery.status is DeliveryStatus.DELIVERED
        assert delivery.delivered_at == clock.now

    def test_confirmation_is_idempotent(self, orchestrator, store, worker, monotonic):
        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        assert orchestrator.confirm_delivery(outcome.check_in_id) is True
        assert orchestrator.confirm_delivery(outcome.check_in_id) is False

        monotonic.value = 1.0
        worker.run_pending()
        assert store.get_check_in(outcome.check_in_id).delivery.status is DeliveryStatus.DELIVERED

    def test_send_requires_pending(self, orchestrator, store):
        outcome = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)

        result = orchestrator.send_check_in(store.get_check_in(outcome.check_in_id))

        assert result.success is False
        assert result.reason == "not_pending"
        assert result.status is DeliveryStatus.SENT

    def test_confirm_unknown_check_in(self, orchestrator):
        assert orchestrator.confirm_delivery("checkin_missing") is False


class TestResponses:

    def test_invalid_response_type(self, orchestrator, sent_check_in):
        outcome = orchestrator.handle_check_in_response(sent_check_in, "maybe")

        assert outcome.success is False
        assert outcome.reason == "invalid_response_type"

    def test_unknown_check_in(self, orchestrator):
        outcome = orchestrator.handle_check_in_response("checkin_missing", "acknowledged")

        assert outcome.reason == "check_in_not_found"

    def test_check_in_of_another_student(self, orchestrator, sent_check_in):
        outcome = orchestrator.handle_check_in_response(
            sent_check_in, "acknowledged", anonymized_id=OTHER_ID
        )

        assert outcome.reason == "check_in_not_found"

    def test_failed_check_in_cannot_be_answered(self, store, worker, clock):
        store.save_student(Student.new(STUDENT_ID, "college-token", clock.now))
        orchestrator = CheckInOrchestrator(
            store, transport=UnreachableTransport(), worker=worker, clock=clock
        )
        check_in_id = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).check_in_id

        outcome = orchestrator.handle_check_in_response(check_in_id, "acknowledged")

        assert outcome.reason == "check_in_not_sent"

    def test_acknowledged(self, orchestrator, store, sent_check_in, clock):
        outcome = orchestrator.handle_check_in_response(
            sent_check_in, ResponseType.ACKNOWLEDGED, text="thanks", anonymized_id=STUDENT_ID
        )

        assert outcome.success is True
        assert outcome.reason == "response_recorded"
        response = store.get_check_in(sent_check_in).response
        assert response.received is True
        assert response.response_type is ResponseType.ACKNOWLEDGED
        assert response.response_text == "thanks"
        assert response.responded_at == clock.now

    def test_only_first_response_counts(self, orchestrator, sent_check_in):
        orchestrator.handle_check_in_response(sent_check_in, "acknowledged")

        outcome = orchestrator.handle_check_in_response(sent_check_in, "doing_fine")

        assert outcome.success is False
        assert outcome.reason == "already_responded"

    def test_needs_help_creates_one_follow_up(self, orchestrator, store, sent_check_in, clock):
        outcome = orchestrator.handle_check_in_response(sent_check_in, "needs_help")

        assert outcome.success is True
        assert outcome.reason == "follow_up_created"
        assert outcome.next_allowed_check_in == clock.now + timedelta(hours=2)

        follow_up = store.get_check_in(outcome.follow_up_check_in_id)
        assert follow_up.check_in_data.type is CheckInType.SUPPORT_OFFER
        assert follow_up.check_in_data.priority is CheckInPriority.HIGH
        assert follow_up.check_in_data.tone is CheckInTone.SUPPORTIVE
        assert follow_up.check_in_data.message == FOLLOW_UP_MESSAGE
        assert follow_up.cooldown.reason is CooldownReason.FOLLOW_UP_RESPONSE
        assert follow_up.delivery.status is DeliveryStatus.SENT

        repeated = orchestrator.handle_check_in_response(sent_check_in, "needs_help")
        assert repeated.reason == "already_responded"
        assert len(store.find_check_ins(STUDENT_ID)) == 2

    def test_concurrent_needs_help_escalates_once(self, worker, clock):
        store = RendezvousStore(clock)
        store.save_student(Student.new(STUDENT_ID, "college-token", clock.now))
        orchestrator = CheckInOrchestrator(store, worker=worker, rng=random.Random(7), clock=clock)
        check_in_id = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).check_in_id

        outcomes = []
        store.held_check_in_id = check_in_id
        threads = [
            threading.Thread(
                target=lambda: outcomes.append(
                    orchestrator.handle_check_in_response(check_in_id, "needs_help")
                )
            )
            for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        store.held_check_in_id = None

        assert sorted(o.reason for o in outcomes) == ["already_responded", "follow_up_created"]
        follow_ups = [
            c for c in store.find_check_ins(STUDENT_ID)
            if c.check_in_data.type is CheckInType.SUPPORT_OFFER
        ]
        assert len(follow_ups) == 1

    def test_follow_up_cooldown_gates_next_trigger(self, orchestrator, sent_check_in, clock):
        follow_up = orchestrator.handle_check_in_response(sent_check_in, "needs_help")
        clock.advance(hours=1)

        blocked = orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS)
        assert blocked.reason == "cooldown_active"
        assert blocked.next_allowed_check_in == follow_up.next_allowed_check_in

        clock.advance(hours=1)
        assert orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).success is True

    def test_doing_fine_extends_cooldown(self, orchestrator, store, sent_check_in, clock):
        outcome = orchestrator.handle_check_in_response(sent_check_in, "doing_fine")

        assert outcome.reason == "cooldown_extended"
        assert outcome.next_allowed_check_in == clock.now + timedelta(hours=48)
        cooldown = store.get_check_in(sent_check_in).cooldown
        assert cooldown.reason is CooldownReason.STUDENT_DOING_WELL

        clock.advance(hours=30)
        assert orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).reason == "cooldown_active"

    def test_storage_failure(self, clock):
        broken = MagicMock(spec=MealMonitorStore)
        broken.get_check_in.side_effect = RuntimeError("connection lost")
        orchestrator = CheckInOrchestrator(broken, clock=clock)

        outcome = orchestrator.handle_check_in_response("checkin_0123", "acknowledged")

        assert outcome.reason == "system_error"


class TestPrivacyPreferences:

    @pytest.mark.parametrize("days", [0, 366, True, "30", 30.0])
    def test_rejects_invalid_retention(self, orchestrator, days):
        outcome = orchestrator.update_privacy_preferences(STUDENT_ID, data_retention_days=days)

        assert outcome.success is False
        assert outcome.reason == "invalid_retention_days"

    def test_unknown_student(self, orchestrator):
        outcome = orchestrator.update_privacy_preferences(OTHER_ID, opt_out=True)

        assert outcome.reason == "student_not_found"

    def test_retention_recomputes_expiry(self, orchestrator, store, clock):
        clock.advance(days=3)

        outcome = orchestrator.update_privacy_preferences(STUDENT_ID, data_retention_days=30)

        assert outcome.success is True
        assert outcome.reason == "updated"
        assert outcome.data_expiry_date == clock.now + timedelta(days=30)
        assert store.get_student(STUDENT_ID).data_expiry_date == clock.now + timedelta(days=30)

    def test_only_given_fields_change(self, orchestrator, clock):
        clock.advance(hours=5)

        outcome = orchestrator.update_privacy_preferences(STUDENT_ID, opt_out=True)

        settings = outcome.privacy_settings
        assert settings.opt_out is True
        assert settings.allow_check_ins is True
        assert settings.data_retention_days == 90
        assert settings.last_opt_out_update == clock.now
        assert outcome.data_expiry_date == clock.now + timedelta(days=90)

    def test_update_leaves_baseline_and_activity_alone(self, orchestrator, store, clock):
        student = store.get_student(STUDENT_ID)
        student.baseline_pattern.average_meals_per_week = 12.0
        store.save_student(student)
        store.touch_student(STUDENT_ID, clock.advance(hours=1))

        orchestrator.update_privacy_preferences(STUDENT_ID, allow_check_ins=False)

        stored = store.get_student(STUDENT_ID)
        assert stored.privacy_settings.allow_check_ins is False
        assert stored.baseline_pattern.average_meals_per_week == 12.0
        assert stored.last_activity == clock.now

    def test_opt_back_in(self, orchestrator):
        orchestrator.update_privacy_preferences(STUDENT_ID, opt_out=True)
        orchestrator.update_privacy_preferences(STUDENT_ID, opt_out=False)

        assert orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).success is True

    def test_storage_failure(self, clock):
        broken = MagicMock(spec=MealMonitorStore)
        broken.update_privacy.side_effect = RuntimeError("connection lost")
        orchestrator = CheckInOrchestrator(broken, clock=clock)

        outcome = orchestrator.update_privacy_preferences(STUDENT_ID, opt_out=True)

        assert outcome.reason == "system_error"


class TestHistory:

    def test_newest_first(self, orchestrator, clock):
        ids = []
        for _ in range(3):
            ids.append(orchestrator.trigger_check_in(STUDENT_ID, MISSED_MEALS).check_in_id)
            clock.advance(hours=25)

        history = orchestrator.get_check_in_history(STUDENT_ID, limit=2)

        assert [c.check_in_id for c in history] == [ids[2], ids[1]]

    def test_storage_failure_returns_empty(self, clock):
        broken = MagicMock(spec=MealMonitorStore)
        broken.find_check_ins.side_effect = RuntimeError("connection lost")

        assert CheckInOrchestrator(broken, clock=clock).get_check_in_history(STUDENT_ID) == []
