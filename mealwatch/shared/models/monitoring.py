"""Domain models for meal-pattern monitoring.

Three persisted entities (Student, MealAttendance, CheckIn) plus the
analysis result types passed between the detection engine and the
check-in orchestrator. Every enumerated field is an Enum so invalid
states cannot be represented.

All datetimes are naive UTC.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

ATTENDANCE_TTL_DAYS = 90
DEFAULT_RETENTION_DAYS = 90


class MealType(Enum):
    """Meals tracked by college dining systems."""
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"

    @property
    def order(self) -> int:
        """Position within a day, used to order same-day records."""
        return _MEAL_ORDER[self]


_MEAL_ORDER = {MealType.BREAKFAST: 0, MealType.LUNCH: 1, MealType.DINNER: 2}


class AnomalyReason(Enum):
    """Outcome reason of a pattern analysis run.

    The first three are signal reasons; the rest are neutral outcomes
    that never produce a check-in.
    """
    MISSED_CONSECUTIVE = "missed_consecutive"
    FREQUENCY_DROP = "frequency_drop"
    PATTERN_CHANGE = "pattern_change"
    NONE = "none"
    STUDENT_OPTED_OUT = "student_opted_out"
    STUDENT_NOT_FOUND = "student_not_found"
    INSUFFICIENT_DATA = "insufficient_data"
    ANALYSIS_ERROR = "analysis_error"


class CheckInType(Enum):
    MEAL_CONCERN = "meal_concern"
    WELLNESS_CHECK = "wellness_check"
    SUPPORT_OFFER = "support_offer"


class CheckInTone(Enum):
    """Message framing. Gentler wording is used for higher concern."""
    GENTLE = "gentle"
    SUPPORTIVE = "supportive"
    ENCOURAGING = "encouraging"


class CheckInPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DeliveryStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryMethod(Enum):
    APP_NOTIFICATION = "app_notification"
    EMAIL = "email"
    SMS = "sms"


class ResponseType(Enum):
    ACKNOWLEDGED = "acknowledged"
    NEEDS_HELP = "needs_help"
    DOING_FINE = "doing_fine"
    NO_RESPONSE = "no_response"


class CooldownReason(Enum):
    SYSTEM_COOLDOWN = "system_cooldown"
    FOLLOW_UP_RESPONSE = "follow_up_response"
    STUDENT_DOING_WELL = "student_doing_well"
    RECENT_CHECK_IN = "recent_check_in"
    USER_REQUESTED_PAUSE = "user_requested_pause"


# Statuses whose cooldown gates the next check-in. Pending attempts are
# about to be sent, so they hold the gate as well.
COOLDOWN_STATUSES = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.SENT,
    DeliveryStatus.DELIVERED,
})


@dataclass
class PrivacySettings:
    opt_out: bool = False
    allow_check_ins: bool = True
    data_retention_days: int = DEFAULT_RETENTION_DAYS
    last_opt_out_update: Optional[datetime] = None

    @property
    def check_ins_permitted(self) -> bool:
        return not self.opt_out and self.allow_check_ins


@dataclass(frozen=True)
class PreferredMealTime:
    """A meal the student habitually attends, with its usual time range."""
    meal_type: MealType
    start: str      # "HH:MM"
    end: str        # "HH:MM"


@dataclass
class BaselinePattern:
    """Rolling summary of normal behavior; not raw history."""
    last_updated: datetime
    average_meals_per_week: float = 0.0
    preferred_meal_times: List[PreferredMealTime] = field(default_factory=list)


@dataclass
class Student:
    """One pseudonymous identity. Holds no real identifier."""
    anonymized_id: str
    college_token: str
    data_expiry_date: datetime
    created_at: datetime
    baseline_pattern: BaselinePattern
    privacy_settings: PrivacySettings = field(default_factory=PrivacySettings)
    last_activity: Optional[datetime] = None

    @classmethod
    def new(cls, anonymized_id: str, college_token: str, now: datetime) -> "Student":
        """Create a student with default privacy settings and retention."""
        return cls(
            anonymized_id=anonymized_id,
            college_token=college_token,
            data_expiry_date=now + timedelta(days=DEFAULT_RETENTION_DAYS),
            created_at=now,
            baseline_pattern=BaselinePattern(last_updated=now),
            privacy_settings=PrivacySettings(last_opt_out_update=now),
            last_activity=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.data_expiry_date


@dataclass(frozen=True)
class MealData:
    date: datetime
    meal_type: MealType
    attended: bool
    timestamp: datetime


@dataclass(frozen=True)
class AttendanceSource:
    college_system: str
    sync_timestamp: datetime


@dataclass(frozen=True)
class AttendanceAnalysis:
    """Cached result of the last analysis run covering a record."""
    is_anomaly: bool = False
    anomaly_score: float = 0.0
    reason: AnomalyReason = AnomalyReason.NONE
    last_analyzed: Optional[datetime] = None


@dataclass
class MealAttendance:
    """One (student, date, meal) observation."""
    record_id: str
    student_anonymized_id: str
    meal_data: MealData
    source: AttendanceSource
    created_at: datetime
    pattern_analysis: AttendanceAnalysis = field(default_factory=AttendanceAnalysis)

    @property
    def expires_at(self) -> datetime:
        """Fixed ceiling, independent of the student's retention setting."""
        return self.created_at + timedelta(days=ATTENDANCE_TTL_DAYS)

    @property
    def sort_key(self) -> Tuple[datetime, int, datetime]:
        return (
            self.meal_data.date,
            self.meal_data.meal_type.order,
            self.meal_data.timestamp,
        )


@dataclass(frozen=True)
class CheckInData:
    type: CheckInType
    message: str
    tone: CheckInTone = CheckInTone.SUPPORTIVE
    priority: CheckInPriority = CheckInPriority.MEDIUM


@dataclass
class Delivery:
    status: DeliveryStatus = DeliveryStatus.PENDING
    method: DeliveryMethod = DeliveryMethod.APP_NOTIFICATION
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


@dataclass
class CheckInResponse:
    received: bool = False
    response_type: Optional[ResponseType] = None
    response_text: str = ""
    responded_at: Optional[datetime] = None


@dataclass
class Cooldown:
    """Gate the orchestrator honors before the next check-in."""
    next_allowed_check_in: datetime
    reason: CooldownReason = CooldownReason.SYSTEM_COOLDOWN


@dataclass
class CheckIn:
    """One notification attempt and everything that happened to it."""
    check_in_id: str
    student_anonymized_id: str
    check_in_data: CheckInData
    cooldown: Cooldown
    created_at: datetime
    delivery: Delivery = field(default_factory=Delivery)
    response: CheckInResponse = field(default_factory=CheckInResponse)

    @property
    def holds_cooldown(self) -> bool:
        return self.delivery.status in COOLDOWN_STATUSES


@dataclass(frozen=True)
class SignalResult:
    """Output of one signal analyzer.

    Immutable so results can be attached to explanations verbatim.
    """
    name: str
    score: float
    reason: AnomalyReason
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Signal score must be 0.0-1.0, got {self.score}")

    @property
    def is_candidate(self) -> bool:
        return self.reason is not AnomalyReason.NONE


@dataclass(frozen=True)
class PatternAnalysis:
    """Verdict of the pattern detection engine for one student."""
    is_anomaly: bool
    reason: AnomalyReason
    score: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
    signals: Tuple[SignalResult, ...] = ()

    def __post_init__(self):
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Anomaly score must be 0.0-1.0, got {self.score}")

    @classmethod
    def neutral(cls, reason: AnomalyReason) -> "PatternAnalysis":
        return cls(is_anomaly=False, reason=reason, score=0.0)

    def to_cached(self, analyzed_at: datetime) -> AttendanceAnalysis:
        return AttendanceAnalysis(
            is_anomaly=self.is_anomaly,
            anomaly_score=self.score,
            reason=self.reason,
            last_analyzed=analyzed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public summary used in API responses."""
        return {
            "isAnomaly": self.is_anomaly,
            "reason": self.reason.value,
            "score": self.score,
        }
