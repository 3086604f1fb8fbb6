"""Shared domain models for the mealwatch platform."""
from .monitoring import (
    ATTENDANCE_TTL_DAYS,
    DEFAULT_RETENTION_DAYS,
    AnomalyReason,
    AttendanceAnalysis,
    AttendanceSource,
    BaselinePattern,
    CheckIn,
    CheckInData,
    CheckInPriority,
    CheckInResponse,
    CheckInTone,
    CheckInType,
    Cooldown,
    CooldownReason,
    Delivery,
    DeliveryMethod,
    DeliveryStatus,
    MealAttendance,
    MealData,
    MealType,
    PatternAnalysis,
    PreferredMealTime,
    PrivacySettings,
    ResponseType,
    SignalResult,
    Student,
)

__all__ = [
    "ATTENDANCE_TTL_DAYS",
    "DEFAULT_RETENTION_DAYS",
    "AnomalyReason",
    "AttendanceAnalysis",
    "AttendanceSource",
    "BaselinePattern",
    "CheckIn",
    "CheckInData",
    "CheckInPriority",
    "CheckInResponse",
    "CheckInTone",
    "CheckInType",
    "Cooldown",
    "CooldownReason",
    "Delivery",
    "DeliveryMethod",
    "DeliveryStatus",
    "MealAttendance",
    "MealData",
    "MealType",
    "PatternAnalysis",
    "PreferredMealTime",
    "PrivacySettings",
    "ResponseType",
    "SignalResult",
    "Student",
]
