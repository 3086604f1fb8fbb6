"""Tests for meal monitoring domain models."""
import pytest
from datetime import datetime, timedelta

from mealwatch.shared.models import (
    ATTENDANCE_TTL_DAYS,
    AnomalyReason,
    AttendanceSource,
    CheckIn,
    CheckInData,
    CheckInType,
    Cooldown,
    Delivery,
    DeliveryStatus,
    MealAttendance,
    MealData,
    MealType,
    PatternAnalysis,
    PrivacySettings,
    SignalResult,
    Student,
)

NOW = datetime(2024, 3, 15, 12, 0, 0)


def _record(day: int, meal: MealType, hour: int = 12) -> MealAttendance:
    date = datetime(2024, 3, day)
    return MealAttendance(
        record_id=f"meal_{day}_{meal.value}",
        student_anonymized_id="0123456789abcdef",
        meal_data=MealData(
            date=date,
            meal_type=meal,
            attended=True,
            timestamp=date.replace(hour=hour),
        ),
        source=AttendanceSource(college_system="pos", sync_timestamp=NOW),
        created_at=NOW,
    )


class TestStudent:

    def test_new_student_defaults(self):
        student = Student.new("0123456789abcdef", "token", NOW)

        assert student.data_expiry_date == NOW + timedelta(days=90)
        assert student.privacy_settings.opt_out is False
        assert student.privacy_settings.allow_check_ins is True
        assert student.privacy_settings.data_retention_days == 90
        assert student.baseline_pattern.last_updated == NOW
        assert student.last_activity == NOW

    def test_expiry_boundary(self):
        student = Student.new("0123456789abcdef", "token", NOW)

        assert student.is_expired(student.data_expiry_date - timedelta(seconds=1)) is False
        assert student.is_expired(student.data_expiry_date) is True


class TestPrivacySettings:

    @pytest.mark.parametrize("opt_out,allow,permitted", [
        (False, True, True),
        (True, True, False),
        (False, False, False),
        (True, False, False),
    ])
    def test_check_ins_permitted(self, opt_out, allow, permitted):
        settings = PrivacySettings(opt_out=opt_out, allow_check_ins=allow)

        assert settings.check_ins_permitted is permitted


class TestMealAttendance:

    def test_expires_at_fixed_ceiling(self):
        record = _record(1, MealType.LUNCH)

        assert record.expires_at == NOW + timedelta(days=ATTENDANCE_TTL_DAYS)

    def test_sort_key_orders_meals_within_day(self):
        records = [
            _record(2, MealType.BREAKFAST),
            _record(1, MealType.DINNER),
            _record(1, MealType.BREAKFAST),
            _record(1, MealType.LUNCH),
        ]

        ordered = sorted(records, key=lambda r: r.sort_key)

        assert [(r.meal_data.date.day, r.meal_data.meal_type) for r in ordered] == [
            (1, MealType.BREAKFAST),
            (1, MealType.LUNCH),
            (1, MealType.DINNER),
            (2, MealType.BREAKFAST),
        ]


class TestCheckIn:

    @pytest.mark.parametrize("status,holds", [
        (DeliveryStatus.PENDING, True),
        (DeliveryStatus.SENT, True),
        (DeliveryStatus.DELIVERED, True),
        (DeliveryStatus.FAILED, False),
    ])
    def test_holds_cooldown(self, status, holds):
        check_in = CheckIn(
            check_in_id="checkin_1",
            student_anonymized_id="0123456789abcdef",
            check_in_data=CheckInData(type=CheckInType.MEAL_CONCERN, message="hi"),
            cooldown=Cooldown(next_allowed_check_in=NOW),
            created_at=NOW,
            delivery=Delivery(status=status),
        )

        assert check_in.holds_cooldown is holds


class TestSignalResult:

    @pytest.mark.parametrize("score", [-0.01, 1.01])
    def test_score_out_of_range(self, score):
        with pytest.raises(ValueError):
            SignalResult(name="x", score=score, reason=AnomalyReason.NONE)

    def test_candidate(self):
        assert SignalResult("x", 0.5, AnomalyReason.FREQUENCY_DROP).is_candidate is True
        assert SignalResult("x", 0.5, AnomalyReason.NONE).is_candidate is False


class TestPatternAnalysis:

    def test_neutral(self):
        analysis = PatternAnalysis.neutral(AnomalyReason.INSUFFICIENT_DATA)

        assert analysis.is_anomaly is False
        assert analysis.score == 0.0
        assert analysis.to_dict() == {
            "isAnomaly": False,
            "reason": "insufficient_data",
            "score": 0.0,
        }

    def test_to_cached(self):
        analysis = PatternAnalysis(
            is_anomaly=True,
            reason=AnomalyReason.MISSED_CONSECUTIVE,
            score=0.8,
        )

        cached = analysis.to_cached(NOW)

        assert cached.is_anomaly is True
        assert cached.anomaly_score == 0.8
        assert cached.reason is AnomalyReason.MISSED_CONSECUTIVE
        assert cached.last_analyzed == NOW

    def test_score_validated(self):
        with pytest.raises(ValueError):
            PatternAnalysis(is_anomaly=True, reason=AnomalyReason.PATTERN_CHANGE, score=1.5)
