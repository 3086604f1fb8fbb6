"""Request models for the meal monitor HTTP API.

Payloads use camelCase on the wire. Datetimes are normalized to naive
UTC; a bare ``YYYY-MM-DD`` date is read as midnight.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, field_validator

from mealwatch.shared.models import MealType

MAX_BATCH_SIZE = 100


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _expand_bare_date(value: Any) -> Any:
    if isinstance(value, str) and len(value) == 10:
        return f"{value}T00:00:00"
    return value


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MealObservation(_ApiModel):
    """One meal as reported by the college system."""
    date: datetime
    meal_type: MealType = Field(..., alias="mealType")
    attended: StrictBool
    timestamp: Optional[datetime] = None

    @field_validator("date", "timestamp", mode="before")
    @classmethod
    def _bare_dates(cls, value: Any) -> Any:
        return _expand_bare_date(value)

    @field_validator("date")
    @classmethod
    def _day_only(cls, value: datetime) -> datetime:
        return _to_naive_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)

    def to_observation(self) -> Dict[str, Any]:
        """Shape expected by PatternDetectionEngine.record_attendance."""
        return {
            "date": self.date,
            "meal_type": self.meal_type,
            "attended": self.attended,
            "timestamp": self.timestamp,
        }


class AttendanceSourceIn(_ApiModel):
    college_system: str = Field(..., alias="collegeSystem", min_length=1, max_length=255)
    sync_timestamp: Optional[datetime] = Field(None, alias="syncTimestamp")

    @field_validator("sync_timestamp")
    @classmethod
    def _sync_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)


class _IngestionRequest(_ApiModel):
    college_token: str = Field(..., alias="collegeToken", min_length=1)
    college_id: str = Field(..., alias="collegeId", min_length=1)
    enrollment_year: Optional[Union[StrictInt, str]] = Field(None, alias="enrollmentYear")
    department: Optional[str] = None
    source: AttendanceSourceIn

    @property
    def enrollment_year_key(self) -> Optional[str]:
        return str(self.enrollment_year) if self.enrollment_year is not None else None


class AttendanceRequest(_IngestionRequest):
    """POST /meal-attendance"""
    meal_data: MealObservation = Field(..., alias="mealData")

    @property
    def observations(self) -> List[Dict[str, Any]]:
        return [self.meal_data.to_observation()]


class BatchAttendanceRequest(_IngestionRequest):
    """POST /meal-attendance/batch"""
    meal_data: List[MealObservation] = Field(
        ...,
        alias="mealData",
        min_length=1,
        max_length=MAX_BATCH_SIZE,
    )

    @property
    def observations(self) -> List[Dict[str, Any]]:
        return [m.to_observation() for m in self.meal_data]


class PrivacyUpdateRequest(_ApiModel):
    """PUT /meal-attendance/<anonymizedId>/privacy"""
    opt_out: Optional[StrictBool] = Field(None, alias="optOut")
    allow_check_ins: Optional[StrictBool] = Field(None, alias="allowCheckIns")
    data_retention_days: Optional[StrictInt] = Field(None, alias="dataRetentionDays")


class CheckInResponseRequest(_ApiModel):
    """POST /meal-attendance/<anonymizedId>/check-in/<checkInId>/response"""
    response_type: str = Field(..., alias="responseType", min_length=1)
    response_text: str = Field("", alias="responseText", max_length=2000)
