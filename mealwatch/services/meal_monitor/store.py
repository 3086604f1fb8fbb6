"""Storage for students, meal attendance and check-ins.

The store is the only shared mutable state of the service. It enforces
record lifetimes itself:
- MealAttendance is unreachable 90 days after creation.
- A Student is unreachable after its data_expiry_date, and its
  attendance and check-ins become unreachable with it.

Attendance therefore lives for the shorter of its own ceiling and the
student's retention window.

The cooldown gate is a single conditional insert
(``insert_check_in_if_clear``) so two concurrent triggers for the same
student can never both pass it.
"""
import copy
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from mealwatch.shared.models import (
    AttendanceAnalysis,
    BaselinePattern,
    CheckIn,
    CheckInResponse,
    Cooldown,
    DeliveryStatus,
    MealAttendance,
    Student,
)

logger = logging.getLogger(__name__)


class MealMonitorStore(ABC):
    """Persistence contract used by the detection engine and orchestrator."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or datetime.utcnow

    # Students

    @abstractmethod
    def get_student(self, anonymized_id: str) -> Optional[Student]:
        """Return the student, or None if unknown or expired."""

    @abstractmethod
    def save_student(self, student: Student) -> Student:
        """Insert or replace a student."""

    @abstractmethod
    def create_student_if_absent(self, student: Student) -> Optional[Student]:
        """Insert a new student unless a live one with the same id exists.

        Returns:
            None if inserted, otherwise the existing student
        """

    @abstractmethod
    def touch_student(self, anonymized_id: str, at: datetime) -> Optional[Student]:
        """Set last_activity only; every other column is left as stored.

        Returns:
            The student as stored after the write, or None if unknown or expired
        """

    @abstractmethod
    def update_privacy(
        self,
        anonymized_id: str,
        at: datetime,
        opt_out: Optional[bool] = None,
        allow_check_ins: Optional[bool] = None,
        data_retention_days: Optional[int] = None,
    ) -> Optional[Student]:
        """Apply the given privacy fields in one step.

        Stamps last_opt_out_update with ``at`` and recomputes
        data_expiry_date from the resulting retention period.

        Returns:
            The updated student, or None if unknown or expired
        """

    @abstractmethod
    def update_baseline(self, anonymized_id: str, baseline: BaselinePattern) -> bool:
        """Replace a student's baseline. Last writer wins."""

    # Attendance

    @abstractmethod
    def add_attendance(self, records: List[MealAttendance]) -> List[MealAttendance]:
        """Insert attendance records."""

    @abstractmethod
    def find_attendance(
        self,
        anonymized_id: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[MealAttendance]:
        """Live records with ``start <= date < end``, in meal order."""

    @abstractmethod
    def cache_analysis(
        self,
        record_ids: Iterable[str],
        analysis: AttendanceAnalysis,
    ) -> int:
        """Stamp an analysis result on records; returns how many changed."""

    # Check-ins

    @abstractmethod
    def get_check_in(self, check_in_id: str) -> Optional[CheckIn]:
        """Return a visible check-in, or None."""

    @abstractmethod
    def save_check_in(self, check_in: CheckIn) -> CheckIn:
        """Insert or replace a check-in without consulting the cooldown."""

    @abstractmethod
    def insert_check_in_if_clear(
        self,
        check_in: CheckIn,
        now: datetime,
    ) -> Optional[CheckIn]:
        """Atomically insert unless the student's cooldown is active.

        The most recent cooldown-holding check-in of the student gates the
        insert: it is allowed only when that check-in's
        next_allowed_check_in is not after ``now``.

        Returns:
            None if inserted, otherwise the check-in whose cooldown blocked it
        """

    @abstractmethod
    def latest_cooldown_check_in(self, anonymized_id: str) -> Optional[CheckIn]:
        """Most recent check-in whose delivery status holds the cooldown."""

    @abstractmethod
    def find_check_ins(self, anonymized_id: str, limit: int = 10) -> List[CheckIn]:
        """Visible check-ins of a student, newest first."""

    @abstractmethod
    def transition_delivery(
        self,
        check_in_id: str,
        expected: DeliveryStatus,
        new_status: DeliveryStatus,
        at: datetime,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Move delivery status only if it currently equals ``expected``."""

    @abstractmethod
    def record_response(self, check_in_id: str, response: CheckInResponse) -> bool:
        """Store the first response to a check-in.

        Returns:
            False if the check-in is not visible or already has a response
        """

    @abstractmethod
    def update_cooldown(self, check_in_id: str, cooldown: Cooldown) -> bool:
        """Replace the cooldown of a check-in."""

    # Lifecycle

    @abstractmethod
    def purge_expired(self) -> Dict[str, int]:
        """Delete every expired record; returns counts per entity."""


class InMemoryMealMonitorStore(MealMonitorStore):
    """Thread-safe in-memory store for development and tests.

    Records are copied on the way in and out, so callers must write back
    through the store exactly as they would with a database.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._lock = threading.RLock()
        self._students: Dict[str, Student] = {}
        self._attendance: Dict[str, MealAttendance] = {}
        self._check_ins: Dict[str, CheckIn] = {}
        self._check_in_sequence: Dict[str, int] = {}
        self._sequence = itertools.count()

        logger.info("IN_MEMORY_STORE_INITIALIZED")

    # Students

    def get_student(self, anonymized_id: str) -> Optional[Student]:
        with self._lock:
            student = self._live_student(anonymized_id)
            return copy.deepcopy(student) if student else None

    def save_student(self, student: Student) -> Student:
        with self._lock:
            self._students[student.anonymized_id] = copy.deepcopy(student)
        return student

    def create_student_if_absent(self, student: Student) -> Optional[Student]:
        with self._lock:
            existing = self._live_student(student.anonymized_id)
            if existing is not None:
                return copy.deepcopy(existing)
            self._students[student.anonymized_id] = copy.deepcopy(student)
            return None

    def touch_student(self, anonymized_id: str, at: datetime) -> Optional[Student]:
        with self._lock:
            student = self._live_student(anonymized_id)
            if student is None:
                return None
            student.last_activity = at
            return copy.deepcopy(student)

    def update_privacy(
        self,
        anonymized_id: str,
        at: datetime,
        opt_out: Optional[bool] = None,
        allow_check_ins: Optional[bool] = None,
        data_retention_days: Optional[int] = None,
    ) -> Optional[Student]:
        with self._lock:
            student = self._live_student(anonymized_id)
            if student is None:
                return None
            settings = student.privacy_settings
            if opt_out is not None:
                settings.opt_out = opt_out
            if allow_check_ins is not None:
                settings.allow_check_ins = allow_check_ins
            if data_retention_days is not None:
                settings.data_retention_days = data_retention_days
            settings.last_opt_out_update = at
            student.data_expiry_date = at + timedelta(days=settings.data_retention_days)
            return copy.deepcopy(student)

    def update_baseline(self, anonymized_id: str, baseline: BaselinePattern) -> bool:
        with self._lock:
            student = self._live_student(anonymized_id)
            if student is None:
                return False
            student.baseline_pattern = copy.deepcopy(baseline)
            return True

    # Attendance

    def add_attendance(self, records: List[MealAttendance]) -> List[MealAttendance]:
        with self._lock:
            for record in records:
                self._attendance[record.record_id] = copy.deepcopy(record)
        return records

    def find_attendance(
        self,
        anonymized_id: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[MealAttendance]:
        with self._lock:
            if self._live_student(anonymized_id) is None:
                return []
            now = self.clock()
            matches = [
                copy.deepcopy(record)
                for record in self._attendance.values()
                if record.student_anonymized_id == anonymized_id
                and now < record.expires_at
                and record.meal_data.date >= start
                and (end is None or record.meal_data.date < end)
            ]
        matches.sort(key=lambda r: r.sort_key)
        return matches

    def cache_analysis(
        self,
        record_ids: Iterable[str],
        analysis: AttendanceAnalysis,
    ) -> int:
        updated = 0
        with self._lock:
            for record_id in record_ids:
                record = self._attendance.get(record_id)
                if record is not None:
                    record.pattern_analysis = analysis
                    updated += 1
        return updated

    # Check-ins

    def get_check_in(self, check_in_id: str) -> Optional[CheckIn]:
        with self._lock:
            check_in = self._visible_check_in(check_in_id)
            return copy.deepcopy(check_in) if check_in else None

    def save_check_in(self, check_in: CheckIn) -> CheckIn:
        with self._lock:
            self._store_check_in(check_in)
        return check_in

    def insert_check_in_if_clear(
        self,
        check_in: CheckIn,
        now: datetime,
    ) -> Optional[CheckIn]:
        with self._lock:
            latest = self._latest_cooldown(check_in.student_anonymized_id)
            if latest is not None and latest.cooldown.next_allowed_check_in > now:
                return copy.deepcopy(latest)
            self._store_check_in(check_in)
            return None

    def latest_cooldown_check_in(self, anonymized_id: str) -> Optional[CheckIn]:
        with self._lock:
            latest = self._latest_cooldown(anonymized_id)
            return copy.deepcopy(latest) if latest else None

    def find_check_ins(self, anonymized_id: str, limit: int = 10) -> List[CheckIn]:
        with self._lock:
            if self._live_student(anonymized_id) is None:
                return []
            ordered = sorted(
                self._student_check_ins(anonymized_id),
                key=self._recency_key,
                reverse=True,
            )
            return [copy.deepcopy(c) for c in ordered[:limit]]

    def transition_delivery(
        self,
        check_in_id: str,
        expected: DeliveryStatus,
        new_status: DeliveryStatus,
        at: datetime,
        failure_reason: Optional[str] = None,
    ) -> bool:
        with self._lock:
            check_in = self._check_ins.get(check_in_id)
            if check_in is None or check_in.delivery.status is not expected:
                return False
            check_in.delivery.status = new_status
            if new_status is DeliveryStatus.SENT:
                check_in.delivery.sent_at = at
            elif new_status is DeliveryStatus.DELIVERED:
                check_in.delivery.delivered_at = at
            elif new_status is DeliveryStatus.FAILED:
                check_in.delivery.failure_reason = failure_reason
            return True

    def record_response(self, check_in_id: str, response: CheckInResponse) -> bool:
        with self._lock:
            check_in = self._visible_check_in(check_in_id)
            if check_in is None or check_in.response.received:
                return False
            check_in.response = copy.deepcopy(response)
            return True

    def update_cooldown(self, check_in_id: str, cooldown: Cooldown) -> bool:
        with self._lock:
            check_in = self._visible_check_in(check_in_id)
            if check_in is None:
                return False
            check_in.cooldown = copy.deepcopy(cooldown)
            return True

    # Lifecycle

    def purge_expired(self) -> Dict[str, int]:
        with self._lock:
            now = self.clock()
            expired_students = [
                sid for sid, s in self._students.items() if s.is_expired(now)
            ]
            counts = {"students": 0, "attendance": 0, "check_ins": 0}
            for anonymized_id in expired_students:
                removed = self._reap_student(anonymized_id)
                for key, value in removed.items():
                    counts[key] += value

            stale = [
                rid for rid, r in self._attendance.items() if now >= r.expires_at
            ]
            for record_id in stale:
                del self._attendance[record_id]
            counts["attendance"] += len(stale)

        logger.info("EXPIRED_RECORDS_PURGED", extra=counts)
        return counts

    # Internals; callers hold the lock

    def _live_student(self, anonymized_id: str) -> Optional[Student]:
        student = self._students.get(anonymized_id)
        if student is None:
            return None
        if student.is_expired(self.clock()):
            self._reap_student(anonymized_id)
            return None
        return student

    def _reap_student(self, anonymized_id: str) -> Dict[str, int]:
        self._students.pop(anonymized_id, None)
        attendance_ids = [
            rid for rid, r in self._attendance.items()
            if r.student_anonymized_id == anonymized_id
        ]
        for record_id in attendance_ids:
            del self._attendance[record_id]
        check_in_ids = [
            cid for cid, c in self._check_ins.items()
            if c.student_anonymized_id == anonymized_id
        ]
        for check_in_id in check_in_ids:
            del self._check_ins[check_in_id]
            self._check_in_sequence.pop(check_in_id, None)

        logger.info(
            "STUDENT_DATA_EXPIRED",
            extra={
                "anonymized_id": anonymized_id,
                "attendance_removed": len(attendance_ids),
                "check_ins_removed": len(check_in_ids),
            }
        )
        return {
            "students": 1,
            "attendance": len(attendance_ids),
            "check_ins": len(check_in_ids),
        }

    def _visible_check_in(self, check_in_id: str) -> Optional[CheckIn]:
        check_in = self._check_ins.get(check_in_id)
        if check_in is None:
            return None
        if self._live_student(check_in.student_anonymized_id) is None:
            return None
        return check_in

    def _store_check_in(self, check_in: CheckIn) -> None:
        if check_in.check_in_id not in self._check_in_sequence:
            self._check_in_sequence[check_in.check_in_id] = next(self._sequence)
        self._check_ins[check_in.check_in_id] = copy.deepcopy(check_in)

    def _student_check_ins(self, anonymized_id: str) -> List[CheckIn]:
        return [
            c for c in self._check_ins.values()
            if c.student_anonymized_id == anonymized_id
        ]

    def _latest_cooldown(self, anonymized_id: str) -> Optional[CheckIn]:
        holding = [
            c for c in self._student_check_ins(anonymized_id) if c.holds_cooldown
        ]
        if not holding:
            return None
        return max(holding, key=self._recency_key)

    def _recency_key(self, check_in: CheckIn):
        return (check_in.created_at, self._check_in_sequence.get(check_in.check_in_id, 0))
