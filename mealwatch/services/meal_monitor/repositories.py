"""PostgreSQL repositories for the Meal Monitor store.

Lifetimes are enforced in every query (expired rows are never returned)
and physically removed by ``purge_expired``, which is meant to run on a
schedule. The cooldown gate takes a per-student transaction-scoped
advisory lock, so the "read latest check-in, then insert" sequence is
serialized per student across all service instances.
"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from mealwatch.shared.database import BaseRepository, ConnectionManager
from mealwatch.shared.models import (
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
    PreferredMealTime,
    PrivacySettings,
    ResponseType,
    Student,
)
from mealwatch.shared.models.monitoring import COOLDOWN_STATUSES
from .store import MealMonitorStore

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS students (
    anonymized_id          CHAR(16) PRIMARY KEY,
    college_token          VARCHAR(64) NOT NULL,
    opt_out                BOOLEAN NOT NULL DEFAULT FALSE,
    allow_check_ins        BOOLEAN NOT NULL DEFAULT TRUE,
    data_retention_days    INTEGER NOT NULL DEFAULT 90,
    last_opt_out_update    TIMESTAMP,
    average_meals_per_week DOUBLE PRECISION NOT NULL DEFAULT 0,
    preferred_meal_times   JSONB NOT NULL DEFAULT '[]',
    baseline_last_updated  TIMESTAMP NOT NULL,
    data_expiry_date       TIMESTAMP NOT NULL,
    created_at             TIMESTAMP NOT NULL,
    last_activity          TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_students_expiry ON students (data_expiry_date);

CREATE TABLE IF NOT EXISTS meal_attendance (
    record_id              VARCHAR(40) PRIMARY KEY,
    student_anonymized_id  CHAR(16) NOT NULL,
    meal_date              TIMESTAMP NOT NULL,
    meal_type              VARCHAR(16) NOT NULL,
    attended               BOOLEAN NOT NULL,
    meal_timestamp         TIMESTAMP NOT NULL,
    college_system         VARCHAR(128) NOT NULL,
    sync_timestamp         TIMESTAMP NOT NULL,
    is_anomaly             BOOLEAN NOT NULL DEFAULT FALSE,
    anomaly_score          DOUBLE PRECISION NOT NULL DEFAULT 0,
    anomaly_reason         VARCHAR(32) NOT NULL DEFAULT 'none',
    last_analyzed          TIMESTAMP,
    created_at             TIMESTAMP NOT NULL,
    expires_at             TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attendance_student_date
    ON meal_attendance (student_anonymized_id, meal_date DESC);
CREATE INDEX IF NOT EXISTS idx_attendance_expiry ON meal_attendance (expires_at);

CREATE TABLE IF NOT EXISTS check_ins (
    check_in_id            VARCHAR(40) PRIMARY KEY,
    student_anonymized_id  CHAR(16) NOT NULL,
    check_in_type          VARCHAR(32) NOT NULL,
    message                TEXT NOT NULL,
    tone                   VARCHAR(16) NOT NULL,
    priority               VARCHAR(16) NOT NULL,
    delivery_status        VARCHAR(16) NOT NULL,
    delivery_method        VARCHAR(32) NOT NULL,
    sent_at                TIMESTAMP,
    delivered_at           TIMESTAMP,
    failure_reason         TEXT,
    response_received      BOOLEAN NOT NULL DEFAULT FALSE,
    response_type          VARCHAR(16),
    response_text          TEXT NOT NULL DEFAULT '',
    responded_at           TIMESTAMP,
    next_allowed_check_in  TIMESTAMP NOT NULL,
    cooldown_reason        VARCHAR(32) NOT NULL,
    created_at             TIMESTAMP NOT NULL,
    insertion_seq          BIGSERIAL
);
CREATE INDEX IF NOT EXISTS idx_check_ins_student_created
    ON check_ins (student_anonymized_id, created_at DESC, insertion_seq DESC);
"""


def _optional_enum(enum_cls, value):
    return enum_cls(value) if value is not None else None


class StudentRepository(BaseRepository[Student]):
    """Repository for pseudonymous students."""

    columns = (
        "anonymized_id",
        "college_token",
        "opt_out",
        "allow_check_ins",
        "data_retention_days",
        "last_opt_out_update",
        "average_meals_per_week",
        "preferred_meal_times",
        "baseline_last_updated",
        "data_expiry_date",
        "created_at",
        "last_activity",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "students")

    def _row_to_entity(self, row: tuple) -> Student:
        preferred = row[7]
        if isinstance(preferred, str):
            preferred = json.loads(preferred)

        return Student(
            anonymized_id=row[0],
            college_token=row[1],
            privacy_settings=PrivacySettings(
                opt_out=row[2],
                allow_check_ins=row[3],
                data_retention_days=row[4],
                last_opt_out_update=row[5],
            ),
            baseline_pattern=BaselinePattern(
                average_meals_per_week=row[6],
                preferred_meal_times=[
                    PreferredMealTime(
                        meal_type=MealType(p["meal_type"]),
                        start=p["start"],
                        end=p["end"],
                    )
                    for p in preferred or []
                ],
                last_updated=row[8],
            ),
            data_expiry_date=row[9],
            created_at=row[10],
            last_activity=row[11],
        )

    def _entity_to_params(self, entity: Student) -> Dict[str, Any]:
        settings = entity.privacy_settings
        baseline = entity.baseline_pattern
        return {
            "anonymized_id": entity.anonymized_id,
            "college_token": entity.college_token,
            "opt_out": settings.opt_out,
            "allow_check_ins": settings.allow_check_ins,
            "data_retention_days": settings.data_retention_days,
            "last_opt_out_update": settings.last_opt_out_update,
            "average_meals_per_week": baseline.average_meals_per_week,
            "preferred_meal_times": _preferred_json(baseline),
            "baseline_last_updated": baseline.last_updated,
            "data_expiry_date": entity.data_expiry_date,
            "created_at": entity.created_at,
            "last_activity": entity.last_activity,
        }


def _preferred_json(baseline: BaselinePattern) -> str:
    return json.dumps([
        {"meal_type": p.meal_type.value, "start": p.start, "end": p.end}
        for p in baseline.preferred_meal_times
    ])


class MealAttendanceRepository(BaseRepository[MealAttendance]):
    """Repository for meal attendance observations."""

    columns = (
        "record_id",
        "student_anonymized_id",
        "meal_date",
        "meal_type",
        "attended",
        "meal_timestamp",
        "college_system",
        "sync_timestamp",
        "is_anomaly",
        "anomaly_score",
        "anomaly_reason",
        "last_analyzed",
        "created_at",
        "expires_at",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "meal_attendance")

    def _row_to_entity(self, row: tuple) -> MealAttendance:
        return MealAttendance(
            record_id=row[0],
            student_anonymized_id=row[1],
            meal_data=MealData(
                date=row[2],
                meal_type=MealType(row[3]),
                attended=row[4],
                timestamp=row[5],
            ),
            source=AttendanceSource(college_system=row[6], sync_timestamp=row[7]),
            pattern_analysis=AttendanceAnalysis(
                is_anomaly=row[8],
                anomaly_score=row[9],
                reason=AnomalyReason(row[10]),
                last_analyzed=row[11],
            ),
            created_at=row[12],
        )

    def _entity_to_params(self, entity: MealAttendance) -> Dict[str, Any]:
        meal = entity.meal_data
        analysis = entity.pattern_analysis
        return {
            "record_id": entity.record_id,
            "student_anonymized_id": entity.student_anonymized_id,
            "meal_date": meal.date,
            "meal_type": meal.meal_type.value,
            "attended": meal.attended,
            "meal_timestamp": meal.timestamp,
            "college_system": entity.source.college_system,
            "sync_timestamp": entity.source.sync_timestamp,
            "is_anomaly": analysis.is_anomaly,
            "anomaly_score": analysis.anomaly_score,
            "anomaly_reason": analysis.reason.value,
            "last_analyzed": analysis.last_analyzed,
            "created_at": entity.created_at,
            "expires_at": entity.expires_at,
        }


class CheckInRepository(BaseRepository[CheckIn]):
    """Repository for check-in attempts."""

    columns = (
        "check_in_id",
        "student_anonymized_id",
        "check_in_type",
        "message",
        "tone",
        "priority",
        "delivery_status",
        "delivery_method",
        "sent_at",
        "delivered_at",
        "failure_reason",
        "response_received",
        "response_type",
        "response_text",
        "responded_at",
        "next_allowed_check_in",
        "cooldown_reason",
        "created_at",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "check_ins")

    def _row_to_entity(self, row: tuple) -> CheckIn:
        return CheckIn(
            check_in_id=row[0],
            student_anonymized_id=row[1],
            check_in_data=CheckInData(
                type=CheckInType(row[2]),
                message=row[3],
                tone=CheckInTone(row[4]),
                priority=CheckInPriority(row[5]),
            ),
            delivery=Delivery(
                status=DeliveryStatus(row[6]),
                method=DeliveryMethod(row[7]),
                sent_at=row[8],
                delivered_at=row[9],
                failure_reason=row[10],
            ),
            response=CheckInResponse(
                received=row[11],
                response_type=_optional_enum(ResponseType, row[12]),
                response_text=row[13] or "",
                responded_at=row[14],
            ),
            cooldown=Cooldown(
                next_allowed_check_in=row[15],
                reason=CooldownReason(row[16]),
            ),
            created_at=row[17],
        )

    def _entity_to_params(self, entity: CheckIn) -> Dict[str, Any]:
        data = entity.check_in_data
        response = entity.response
        return {
            "check_in_id": entity.check_in_id,
            "student_anonymized_id": entity.student_anonymized_id,
            "check_in_type": data.type.value,
            "message": data.message,
            "tone": data.tone.value,
            "priority": data.priority.value,
            "delivery_status": entity.delivery.status.value,
            "delivery_method": entity.delivery.method.value,
            "sent_at": entity.delivery.sent_at,
            "delivered_at": entity.delivery.delivered_at,
            "failure_reason": entity.delivery.failure_reason,
            "response_received": response.received,
            "response_type": response.response_type.value if response.response_type else None,
            "response_text": response.response_text,
            "responded_at": response.responded_at,
            "next_allowed_check_in": entity.cooldown.next_allowed_check_in,
            "cooldown_reason": entity.cooldown.reason.value,
            "created_at": entity.created_at,
        }


_STUDENT_VISIBLE = (
    "EXISTS (SELECT 1 FROM students s "
    "WHERE s.anonymized_id = student_anonymized_id AND s.data_expiry_date > %s)"
)

_HOLDS_COOLDOWN = sorted(status.value for status in COOLDOWN_STATUSES)

# insertion_seq breaks created_at ties in insertion order
_NEWEST_FIRST = "created_at DESC, insertion_seq DESC"


class PostgresMealMonitorStore(MealMonitorStore):
    """MealMonitorStore backed by PostgreSQL."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(clock)
        self.connection_manager = connection_manager
        self.students = StudentRepository(connection_manager)
        self.attendance = MealAttendanceRepository(connection_manager)
        self.check_ins = CheckInRepository(connection_manager)

    def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        logger.info("MEAL_MONITOR_SCHEMA_READY")

    # Students

    def get_student(self, anonymized_id: str) -> Optional[Student]:
        student = self.students.find_by_id(anonymized_id)
        if student is None:
            return None
        if student.is_expired(self.clock()):
            self._reap_student(anonymized_id)
            return None
        return student

    def save_student(self, student: Student) -> Student:
        return self.students.save(student)

    def create_student_if_absent(self, student: Student) -> Optional[Student]:
        if self.students.insert_if_absent(student):
            return None
        existing = self.get_student(student.anonymized_id)
        if existing is None:
            # Conflicting row had expired and has just been reaped
            return self.create_student_if_absent(student)
        return existing

    def touch_student(self, anonymized_id: str, at: datetime) -> Optional[Student]:
        return self._update_student("last_activity = %s", [at], anonymized_id)

    def update_privacy(
        self,
        anonymized_id: str,
        at: datetime,
        opt_out: Optional[bool] = None,
        allow_check_ins: Optional[bool] = None,
        data_retention_days: Optional[int] = None,
    ) -> Optional[Student]:
        # SET expressions read the pre-update row, so the expiry uses the new
        # retention when one is given and the stored one otherwise
        return self._update_student(
            "opt_out = COALESCE(%s, opt_out), "
            "allow_check_ins = COALESCE(%s, allow_check_ins), "
            "data_retention_days = COALESCE(%s, data_retention_days), "
            "last_opt_out_update = %s, "
            "data_expiry_date = %s + make_interval(days => COALESCE(%s, data_retention_days))",
            [opt_out, allow_check_ins, data_retention_days, at, at, data_retention_days],
            anonymized_id,
        )

    def _update_student(
        self,
        assignments: str,
        params: List[Any],
        anonymized_id: str,
    ) -> Optional[Student]:
        query = (
            f"UPDATE students SET {assignments} "
            "WHERE anonymized_id = %s AND data_expiry_date > %s "
            f"RETURNING {self.students.select_list}"
        )
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params + [anonymized_id, self.clock()])
                row = cur.fetchone()
            conn.commit()
        return self.students._row_to_entity(row) if row else None

    def update_baseline(self, anonymized_id: str, baseline: BaselinePattern) -> bool:
        return self.students.update_where(
            "average_meals_per_week = %s, preferred_meal_times = %s, "
            "baseline_last_updated = %s",
            "anonymized_id = %s AND data_expiry_date > %s",
            (
                baseline.average_meals_per_week,
                _preferred_json(baseline),
                baseline.last_updated,
                anonymized_id,
                self.clock(),
            ),
        ) > 0

    # Attendance

    def add_attendance(self, records: List[MealAttendance]) -> List[MealAttendance]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                for record in records:
                    self.attendance.save(record, cur=cur)
            conn.commit()
        return records

    def find_attendance(
        self,
        anonymized_id: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[MealAttendance]:
        now = self.clock()
        condition = (
            f"student_anonymized_id = %s AND expires_at > %s AND meal_date >= %s "
            f"AND {_STUDENT_VISIBLE}"
        )
        params: List[Any] = [anonymized_id, now, start, now]
        if end is not None:
            condition += " AND meal_date < %s"
            params.append(end)

        records = self.attendance.find_where(condition, params)
        records.sort(key=lambda r: r.sort_key)
        return records

    def cache_analysis(
        self,
        record_ids: Iterable[str],
        analysis: AttendanceAnalysis,
    ) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        return self.attendance.update_where(
            "is_anomaly = %s, anomaly_score = %s, anomaly_reason = %s, last_analyzed = %s",
            "record_id = ANY(%s)",
            (
                analysis.is_anomaly,
                analysis.anomaly_score,
                analysis.reason.value,
                analysis.last_analyzed,
                ids,
            ),
        )

    # Check-ins

    def get_check_in(self, check_in_id: str) -> Optional[CheckIn]:
        rows = self.check_ins.find_where(
            f"check_in_id = %s AND {_STUDENT_VISIBLE}",
            (check_in_id, self.clock()),
            limit=1,
        )
        return rows[0] if rows else None

    def save_check_in(self, check_in: CheckIn) -> CheckIn:
        return self.check_ins.save(check_in)

    def insert_check_in_if_clear(
        self,
        check_in: CheckIn,
        now: datetime,
    ) -> Optional[CheckIn]:
        student_id = check_in.student_anonymized_id
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (student_id,))
                cur.execute(
                    f"SELECT {self.check_ins.select_list} FROM check_ins "
                    "WHERE student_anonymized_id = %s AND delivery_status = ANY(%s) "
                    f"ORDER BY {_NEWEST_FIRST} LIMIT 1",
                    (student_id, _HOLDS_COOLDOWN),
                )
                row = cur.fetchone()
                latest = self.check_ins._row_to_entity(row) if row else None

                if latest is not None and latest.cooldown.next_allowed_check_in > now:
                    conn.rollback()
                    return latest

                self.check_ins.save(check_in, cur=cur)
            conn.commit()
        return None

    def latest_cooldown_check_in(self, anonymized_id: str) -> Optional[CheckIn]:
        rows = self.check_ins.find_where(
            f"student_anonymized_id = %s AND delivery_status = ANY(%s) AND {_STUDENT_VISIBLE}",
            (anonymized_id, _HOLDS_COOLDOWN, self.clock()),
            order_by=_NEWEST_FIRST,
            limit=1,
        )
        return rows[0] if rows else None

    def find_check_ins(self, anonymized_id: str, limit: int = 10) -> List[CheckIn]:
        return self.check_ins.find_where(
            f"student_anonymized_id = %s AND {_STUDENT_VISIBLE}",
            (anonymized_id, self.clock()),
            order_by=_NEWEST_FIRST,
            limit=limit,
        )

    def transition_delivery(
        self,
        check_in_id: str,
        expected: DeliveryStatus,
        new_status: DeliveryStatus,
        at: datetime,
        failure_reason: Optional[str] = None,
    ) -> bool:
        assignments = "delivery_status = %s"
        params: List[Any] = [new_status.value]
        if new_status is DeliveryStatus.SENT:
            assignments += ", sent_at = %s"
            params.append(at)
        elif new_status is DeliveryStatus.DELIVERED:
            assignments += ", delivered_at = %s"
            params.append(at)
        elif new_status is DeliveryStatus.FAILED:
            assignments += ", failure_reason = %s"
            params.append(failure_reason)
        params.extend([check_in_id, expected.value])

        return self.check_ins.update_where(
            assignments,
            "check_in_id = %s AND delivery_status = %s",
            params,
        ) > 0

    def record_response(self, check_in_id: str, response: CheckInResponse) -> bool:
        return self.check_ins.update_where(
            "response_received = %s, response_type = %s, response_text = %s, responded_at = %s",
            "check_in_id = %s AND response_received = FALSE",
            (
                response.received,
                response.response_type.value if response.response_type else None,
                response.response_text,
                response.responded_at,
                check_in_id,
            ),
        ) > 0

    def update_cooldown(self, check_in_id: str, cooldown: Cooldown) -> bool:
        return self.check_ins.update_where(
            "next_allowed_check_in = %s, cooldown_reason = %s",
            "check_in_id = %s",
            (cooldown.next_allowed_check_in, cooldown.reason.value, check_in_id),
        ) > 0

    # Lifecycle

    def purge_expired(self) -> Dict[str, int]:
        now = self.clock()
        expired = "SELECT anonymized_id FROM students WHERE data_expiry_date <= %s"
        counts = {
            "check_ins": self.check_ins.delete_where(
                f"student_anonymized_id IN ({expired})", (now,)
            ),
            "attendance": self.attendance.delete_where(
                f"expires_at <= %s OR student_anonymized_id IN ({expired})",
                (now, now),
            ),
            "students": self.students.delete_where("data_expiry_date <= %s", (now,)),
        }
        logger.info("EXPIRED_RECORDS_PURGED", extra=counts)
        return counts

    def _reap_student(self, anonymized_id: str) -> None:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                for table in ("check_ins", "meal_attendance"):
                    cur.execute(
                        f"DELETE FROM {table} WHERE student_anonymized_id = %s",
                        (anonymized_id,),
                    )
                cur.execute(
                    "DELETE FROM students WHERE anonymized_id = %s",
                    (anonymized_id,),
                )
            conn.commit()
        logger.info("STUDENT_DATA_EXPIRED", extra={"anonymized_id": anonymized_id})
