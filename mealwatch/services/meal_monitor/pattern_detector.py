"""Pattern detection engine - rule-based anomaly scoring.

Compares a student's recent meal attendance (last 14 days) against the
30 days before it and reports the strongest deviation. Every score is a
deterministic function of the stored records so each verdict can be
explained from its ``details``.

Signals, in tie-break order:
1. Consecutive misses in the recent window
2. Drop in attendance rate versus baseline
3. Change in the shape of attended meals (meal type, time slot, weekday)
4. Shift in per-meal-type share of attended meals
"""
import logging
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from mealwatch.shared.models import (
    AnomalyReason,
    AttendanceSource,
    BaselinePattern,
    MealAttendance,
    MealData,
    MealType,
    PatternAnalysis,
    PreferredMealTime,
    SignalResult,
    Student,
)
from .config import MonitorConfig
from .store import MealMonitorStore

logger = logging.getLogger(__name__)

# Time-of-day slots: (name, start hour inclusive, end hour exclusive)
TIME_SLOTS = (
    ("morning", 6, 11),
    ("afternoon", 11, 15),
    ("evening", 15, 20),
)
NIGHT_SLOT = "night"

_SLOT_MEAL = {
    "morning": MealType.BREAKFAST,
    "afternoon": MealType.LUNCH,
    "evening": MealType.DINNER,
}


def time_slot(hour: int) -> str:
    """Bucket an hour of day into a coarse time slot."""
    for name, start, end in TIME_SLOTS:
        if start <= hour < end:
            return name
    return NIGHT_SLOT


def _slot_range(slot: str) -> Tuple[str, str]:
    for name, start, end in TIME_SLOTS:
        if name == slot:
            return f"{start:02d}:00", f"{end:02d}:00"
    return "20:00", "06:00"


def _start_of_day(when: datetime) -> datetime:
    return when.replace(hour=0, minute=0, second=0, microsecond=0)


def _attendance_rate(records: Sequence[MealAttendance]) -> float:
    if not records:
        return 0.0
    return sum(1 for r in records if r.meal_data.attended) / len(records)


def _distribution(values: Iterable[Hashable]) -> Dict[Hashable, float]:
    counts = Counter(values)
    total = sum(counts.values())
    if total == 0:
        return {}
    return {key: count / total for key, count in counts.items()}


def distribution_similarity(
    first: Dict[Hashable, float],
    second: Dict[Hashable, float],
) -> float:
    """One minus the total variation distance of two distributions.

    Symmetric and bounded in [0, 1]. Two empty distributions are
    identical; an empty and a non-empty one share nothing.
    """
    if not first and not second:
        return 1.0
    if not first or not second:
        return 0.0
    keys = set(first) | set(second)
    distance = 0.5 * sum(abs(first.get(k, 0.0) - second.get(k, 0.0)) for k in keys)
    return min(max(1.0 - distance, 0.0), 1.0)


def meal_pattern_profile(records: Sequence[MealAttendance]) -> Dict[str, Dict[Hashable, float]]:
    """Normalized distributions of attended meals over three dimensions."""
    attended = [r for r in records if r.meal_data.attended]
    return {
        "meal_types": _distribution(r.meal_data.meal_type.value for r in attended),
        "time_slots": _distribution(time_slot(r.meal_data.timestamp.hour) for r in attended),
        "days_of_week": _distribution(r.meal_data.date.weekday() for r in attended),
    }


def pattern_similarity(
    first: Dict[str, Dict[Hashable, float]],
    second: Dict[str, Dict[Hashable, float]],
) -> float:
    """Mean per-dimension similarity of two meal pattern profiles."""
    dimensions = set(first) | set(second)
    if not dimensions:
        return 1.0
    total = sum(
        distribution_similarity(first.get(d, {}), second.get(d, {}))
        for d in dimensions
    )
    return total / len(dimensions)


def longest_miss_run(records: Sequence[MealAttendance]) -> int:
    """Longest run of consecutive missed meals, in meal order."""
    longest = current = 0
    for record in records:
        if record.meal_data.attended:
            current = 0
        else:
            current += 1
            longest = max(longest, current)
    return longest


def consecutive_miss_score(run: int, config: MonitorConfig) -> float:
    """Score for a run of missed meals; non-decreasing in ``run``."""
    if run < config.consecutive_miss_minimum:
        return 0.0
    return min(run / config.consecutive_miss_saturation, 1.0)


class PatternDetector:
    """The four signal analyzers and the decision rule.

    Stateless apart from configuration, so it is safe to share.
    """

    def __init__(self, config: Optional[MonitorConfig] = None):
        self.config = config or MonitorConfig()

    def analyze_consecutive_misses(self, recent: Sequence[MealAttendance]) -> SignalResult:
        run = longest_miss_run(recent)
        score = consecutive_miss_score(run, self.config)
        reason = (
            AnomalyReason.MISSED_CONSECUTIVE
            if run >= self.config.consecutive_miss_minimum
            else AnomalyReason.NONE
        )
        return SignalResult(
            name="consecutive_misses",
            score=score,
            reason=reason,
            details={"max_consecutive_misses": run},
        )

    def analyze_frequency_drop(
        self,
        recent: Sequence[MealAttendance],
        baseline: Sequence[MealAttendance],
    ) -> SignalResult:
        baseline_rate = _attendance_rate(baseline)
        recent_rate = _attendance_rate(recent)
        if not baseline or baseline_rate == 0.0:
            return SignalResult(
                name="frequency_drop",
                score=0.0,
                reason=AnomalyReason.NONE,
                details={"baseline_available": bool(baseline), "baseline_rate": baseline_rate},
            )

        drop = (baseline_rate - recent_rate) / baseline_rate
        is_candidate = drop >= self.config.frequency_drop_minimum
        return SignalResult(
            name="frequency_drop",
            score=min(drop, 1.0) if is_candidate else 0.0,
            reason=AnomalyReason.FREQUENCY_DROP if is_candidate else AnomalyReason.NONE,
            details={
                "recent_rate": recent_rate,
                "baseline_rate": baseline_rate,
                "drop_percentage": drop,
            },
        )

    def analyze_pattern_change(
        self,
        recent: Sequence[MealAttendance],
        baseline: Sequence[MealAttendance],
    ) -> SignalResult:
        if not baseline:
            return SignalResult(
                name="pattern_change",
                score=0.0,
                reason=AnomalyReason.NONE,
                details={"baseline_available": False},
            )

        similarity = pattern_similarity(
            meal_pattern_profile(recent),
            meal_pattern_profile(baseline),
        )
        change = min(max(1.0 - similarity, 0.0), 1.0)
        return SignalResult(
            name="pattern_change",
            score=change,
            reason=(
                AnomalyReason.PATTERN_CHANGE
                if change >= self.config.pattern_change_minimum
                else AnomalyReason.NONE
            ),
            details={"similarity": similarity, "change_score": change},
        )

    def analyze_meal_type_shift(
        self,
        recent: Sequence[MealAttendance],
        baseline: Sequence[MealAttendance],
    ) -> SignalResult:
        if not baseline:
            return SignalResult(
                name="meal_type_shift",
                score=0.0,
                reason=AnomalyReason.NONE,
                details={"baseline_available": False},
            )

        recent_share = meal_pattern_profile(recent)["meal_types"]
        baseline_share = meal_pattern_profile(baseline)["meal_types"]
        changes = {
            meal.value: abs(recent_share.get(meal.value, 0.0) - baseline_share.get(meal.value, 0.0))
            for meal in MealType
        }
        max_change = min(max(changes.values()), 1.0)
        return SignalResult(
            name="meal_type_shift",
            score=max_change,
            reason=(
                AnomalyReason.PATTERN_CHANGE
                if max_change >= self.config.pattern_change_minimum
                else AnomalyReason.NONE
            ),
            details={"max_change": max_change, "changes": changes},
        )

    def evaluate(
        self,
        recent: Sequence[MealAttendance],
        baseline: Sequence[MealAttendance],
    ) -> PatternAnalysis:
        """Run every analyzer and apply the decision rule.

        Among candidate signals scoring at least the threshold, the
        highest score wins; ties keep the earlier analyzer.
        """
        signals = (
            self.analyze_consecutive_misses(recent),
            self.analyze_frequency_drop(recent, baseline),
            self.analyze_pattern_change(recent, baseline),
            self.analyze_meal_type_shift(recent, baseline),
        )

        winner: Optional[SignalResult] = None
        for signal in signals:
            if not signal.is_candidate or signal.score < self.config.threshold:
                continue
            if winner is None or signal.score > winner.score:
                winner = signal

        if winner is None:
            return PatternAnalysis(
                is_anomaly=False,
                reason=AnomalyReason.NONE,
                score=0.0,
                signals=signals,
            )

        return PatternAnalysis(
            is_anomaly=True,
            reason=winner.reason,
            score=winner.score,
            details=dict(winner.details, signal=winner.name),
            signals=signals,
        )

    def compute_baseline(
        self,
        recent: Sequence[MealAttendance],
        now: datetime,
    ) -> BaselinePattern:
        """Summarize a window of records into a rolling baseline."""
        attended = [r for r in recent if r.meal_data.attended]
        first_date = min(r.meal_data.date for r in recent) if recent else now
        weeks = max(1, (now - first_date).days // 7)

        slot_counts = Counter(time_slot(r.meal_data.timestamp.hour) for r in attended)
        preferred = []
        for slot, _ in slot_counts.most_common():
            start, end = _slot_range(slot)
            preferred.append(PreferredMealTime(
                meal_type=_SLOT_MEAL.get(slot, MealType.BREAKFAST),
                start=start,
                end=end,
            ))

        return BaselinePattern(
            last_updated=now,
            average_meals_per_week=len(attended) / weeks,
            preferred_meal_times=preferred,
        )


class PatternDetectionEngine:
    """Analyzes one pseudonymous student's attendance history.

    Also the single writer of students, attendance records, cached
    analysis results and baselines.
    """

    def __init__(
        self,
        store: MealMonitorStore,
        config: Optional[MonitorConfig] = None,
        detector: Optional[PatternDetector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize engine with dependencies.

        Args:
            store: Student/attendance store
            config: Detection configuration
            detector: Signal analyzers (injected for testing)
            clock: Source of the current UTC time (injected for testing)
        """
        self.store = store
        self.config = config or MonitorConfig()
        self.detector = detector or PatternDetector(self.config)
        self.clock = clock or datetime.utcnow

        logger.info(
            "PATTERN_ENGINE_INITIALIZED",
            extra={
                "threshold": self.config.threshold,
                "lookback_days": self.config.lookback_days,
                "baseline_days": self.config.baseline_days,
            }
        )

    def ensure_student(self, anonymized_id: str, college_token: str) -> Tuple[Student, bool]:
        """Fetch the student, creating it on first sight.

        An existing student only has last_activity written, so a privacy
        change committed meanwhile is never overwritten, and the returned
        student reflects it.

        Returns:
            (student, created)
        """
        now = self.clock()
        student = self.store.get_student(anonymized_id)
        if student is None:
            student = Student.new(anonymized_id, college_token, now)
            existing = self.store.create_student_if_absent(student)
            if existing is None:
                logger.info("STUDENT_CREATED", extra={"anonymized_id": anonymized_id})
                return student, True
            student = existing

        touched = self.store.touch_student(anonymized_id, now)
        if touched is None:
            student.last_activity = now
            return student, False
        return touched, False

    def record_attendance(
        self,
        anonymized_id: str,
        observations: Sequence[Dict],
        college_system: str,
        sync_timestamp: Optional[datetime] = None,
    ) -> List[MealAttendance]:
        """Persist meal observations for a student.

        Args:
            anonymized_id: Student the observations belong to
            observations: Dicts with ``date``, ``meal_type``, ``attended`` and
                optional ``timestamp``
            college_system: Name of the sending system
            sync_timestamp: When the college synced the data (defaults to now)

        Returns:
            The stored records
        """
        now = self.clock()
        source = AttendanceSource(
            college_system=college_system,
            sync_timestamp=sync_timestamp or now,
        )
        records = [
            MealAttendance(
                record_id=f"meal_{uuid.uuid4().hex[:16]}",
                student_anonymized_id=anonymized_id,
                meal_data=MealData(
                    date=obs["date"],
                    meal_type=MealType(obs["meal_type"]),
                    attended=bool(obs["attended"]),
                    timestamp=obs.get("timestamp") or now,
                ),
                source=source,
                created_at=now,
            )
            for obs in observations
        ]
        self.store.add_attendance(records)

        logger.info(
            "ATTENDANCE_RECORDED",
            extra={
                "anonymized_id": anonymized_id,
                "record_count": len(records),
                "college_system": college_system,
            }
        )
        return records

    def analyze_patterns(self, anonymized_id: str) -> PatternAnalysis:
        """Analyze a student's meal attendance for anomalies.

        Never raises: storage or computation failures yield a neutral
        ``analysis_error`` verdict.

        Args:
            anonymized_id: Student to analyze

        Returns:
            PatternAnalysis verdict

        Logs:
            - PATTERN_ANALYSIS_COMPLETED: After a full analysis
            - PATTERN_ANALYSIS_FAILED: When an exception was swallowed
        """
        start_time = time.perf_counter()
        try:
            analysis = self._analyze(anonymized_id)
        except Exception as e:
            logger.error(
                "PATTERN_ANALYSIS_FAILED",
                extra={
                    "anonymized_id": anonymized_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return PatternAnalysis.neutral(AnomalyReason.ANALYSIS_ERROR)

        logger.info(
            "PATTERN_ANALYSIS_COMPLETED",
            extra={
                "anonymized_id": anonymized_id,
                "is_anomaly": analysis.is_anomaly,
                "reason": analysis.reason.value,
                "score": analysis.score,
                "latency_ms": (time.perf_counter() - start_time) * 1000,
            }
        )
        return analysis

    def _analyze(self, anonymized_id: str) -> PatternAnalysis:
        student = self.store.get_student(anonymized_id)
        if student is None:
            return PatternAnalysis.neutral(AnomalyReason.STUDENT_NOT_FOUND)
        if student.privacy_settings.opt_out:
            return PatternAnalysis.neutral(AnomalyReason.STUDENT_OPTED_OUT)

        now = self.clock()
        recent_start = _start_of_day(now - timedelta(days=self.config.lookback_days))
        # Observations dated after today are ignored
        recent_end = _start_of_day(now) + timedelta(days=1)
        recent = self.store.find_attendance(anonymized_id, start=recent_start, end=recent_end)

        if len(recent) < self.config.min_recent_records:
            analysis = PatternAnalysis.neutral(AnomalyReason.INSUFFICIENT_DATA)
        else:
            baseline = self.store.find_attendance(
                anonymized_id,
                start=recent_start - timedelta(days=self.config.baseline_days),
                end=recent_start,
            )
            analysis = self.detector.evaluate(recent, baseline)
            self._refresh_baseline_if_due(student, recent, now)

        self.store.cache_analysis((r.record_id for r in recent), analysis.to_cached(now))
        return analysis

    def _refresh_baseline_if_due(
        self,
        student: Student,
        recent: Sequence[MealAttendance],
        now: datetime,
    ) -> None:
        # Moving-window refresh: old behavior decays out of the baseline
        age = now - student.baseline_pattern.last_updated
        if age < timedelta(days=self.config.baseline_refresh_days):
            return
        if len(recent) < self.config.baseline_refresh_min_records:
            return

        baseline = self.detector.compute_baseline(recent, now)
        self.store.update_baseline(student.anonymized_id, baseline)

        logger.info(
            "BASELINE_REFRESHED",
            extra={
                "anonymized_id": student.anonymized_id,
                "average_meals_per_week": baseline.average_meals_per_week,
                "preferred_slot_count": len(baseline.preferred_meal_times),
            }
        )
