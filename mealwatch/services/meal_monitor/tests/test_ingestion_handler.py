"""Tests for the ingestion service and the Flask HTTP handler."""
import random
import pytest
from datetime import timedelta
from unittest.mock import patch

from mealwatch.shared.utils import AnonymizationService
from mealwatch.services.meal_monitor import handler
from mealwatch.services.meal_monitor.check_in_orchestrator import CheckInOrchestrator
from mealwatch.services.meal_monitor.config import MonitorConfig
from mealwatch.services.meal_monitor.delivery import DeliveryWorker, LoggingTransport
from mealwatch.services.meal_monitor.ingestion import (
    AuthenticationFailedError,
    IngestionService,
    InvalidRequestError,
)
from mealwatch.services.meal_monitor.pattern_detector import PatternDetectionEngine
from mealwatch.services.meal_monitor.store import InMemoryMealMonitorStore

KEY = "anonymization_key_that_is_at_least_32_chars"
SALT = "tokenization_salt_that_is_at_least_32_chars"
COLLEGE_ID = "S-1001"
UNKNOWN_ID = "0000000000000000"


@pytest.fixture
def anonymizer(clock):
    return AnonymizationService(KEY, SALT, clock=clock)


@pytest.fixture
def service(anonymizer, store, clock, monotonic):
    config = MonitorConfig()
    return IngestionService(
        anonymizer,
        PatternDetectionEngine(store, config, clock=clock),
        CheckInOrchestrator(
            store,
            config,
            transport=LoggingTransport(),
            worker=DeliveryWorker(time_source=monotonic),
            rng=random.Random(1),
            clock=clock,
        ),
    )


@pytest.fixture
def client(service):
    handler.set_service(service)
    handler.app.config["TESTING"] = True
    with handler.app.test_client() as client:
        yield client
    handler.set_service(None)


@pytest.fixture
def token(anonymizer):
    return anonymizer.create_college_token(COLLEGE_ID)


@pytest.fixture
def anonymized_id(anonymizer):
    return anonymizer.create_anonymized_id(COLLEGE_ID)


@pytest.fixture
def day(clock):
    def _day(days_ago):
        return (clock.now - timedelta(days=days_ago)).strftime("%Y-%m-%d")
    return _day


def _single(token, date, meal_type="lunch", attended=True, **extra):
    body = {
        "collegeToken": token,
        "collegeId": COLLEGE_ID,
        "mealData": {"date": date, "mealType": meal_type, "attended": attended},
        "source": {"collegeSystem": "dining-hall-pos"},
    }
    body.update(extra)
    return body


def _batch(token, meals):
    return {
        "collegeToken": token,
        "collegeId": COLLEGE_ID,
        "mealData": meals,
        "source": {"collegeSystem": "dining-hall-pos", "syncTimestamp": "2024-03-15T06:00:00Z"},
    }


def _missed_dinners(day):
    # Ten dinners, the last five missed
    return [
        {"date": day(d), "mealType": "dinner", "attended": d > 4}
        for d in range(9, -1, -1)
    ]


class TestHealthEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy", "service": "meal-monitor"}

    def test_ready(self, client):
        assert client.get("/ready").status_code == 200

    def test_not_ready_when_service_cannot_start(self):
        handler.set_service(None)
        with patch.object(IngestionService, "from_env", side_effect=ValueError("missing key")):
            response = handler.app.test_client().get("/ready")

        assert response.status_code == 503
        assert response.get_json()["status"] == "not_ready"


class TestIngestAttendance:

    def test_single_observation(self, client, token, anonymized_id, store, day):
        response = client.post("/meal-attendance", json=_single(token, day(1)))

        assert response.status_code == 201
        data = response.get_json()
        assert data["success"] is True
        assert data["anonymizedId"] == anonymized_id
        assert data["dataStored"] is True
        assert data["recordsProcessed"] == 1
        assert data["patternAnalysis"]["reason"] == "insufficient_data"
        assert data["checkInTriggered"] is False
        assert "collegeId" not in data
        assert store.get_student(anonymized_id) is not None

    def test_natural_key_includes_enrollment_and_department(self, client, token, anonymizer, day):
        body = _single(token, day(1), enrollmentYear=2024, department="physics")

        data = client.post("/meal-attendance", json=body).get_json()

        assert data["anonymizedId"] == anonymizer.create_anonymized_id(COLLEGE_ID, "2024", "physics")

    def test_batch_triggers_check_in(self, client, token, day):
        response = client.post("/meal-attendance/batch", json=_batch(token, _missed_dinners(day)))

        assert response.status_code == 201
        data = response.get_json()
        assert data["recordsProcessed"] == 10
        assert data["patternAnalysis"]["isAnomaly"] is True
        assert data["patternAnalysis"]["reason"] == "missed_consecutive"
        assert data["checkInTriggered"] is True

    def test_second_batch_respects_cooldown(self, client, token, day, clock):
        client.post("/meal-attendance/batch", json=_batch(token, _missed_dinners(day)))
        clock.advance(hours=2)

        data = client.post("/meal-attendance", json=_single(token, day(0), "lunch", False)).get_json()

        assert data["patternAnalysis"]["isAnomaly"] is True
        assert data["checkInTriggered"] is False

    @pytest.mark.parametrize("bad_token", ["not-a-real-token", "tést"])
    def test_invalid_token(self, client, day, bad_token):
        response = client.post("/meal-attendance", json=_single(bad_token, day(1)))

        assert response.status_code == 401
        assert "anonymizedId" not in response.get_json()

    def test_missing_body(self, client):
        response = client.post("/meal-attendance", data="not json", content_type="text/plain")

        assert response.status_code == 400
        assert response.get_json()["error"] == "Request body required"

    @pytest.mark.parametrize("meal_data", [
        {"date": "2024-03-14", "mealType": "brunch", "attended": True},
        {"date": "2024-03-14", "mealType": "lunch", "attended": "yes"},
        {"date": "not-a-date", "mealType": "lunch", "attended": True},
        {"mealType": "lunch", "attended": True},
    ])
    def test_invalid_meal_data(self, client, token, meal_data):
        body = _single(token, "2024-03-14")
        body["mealData"] = meal_data

        response = client.post("/meal-attendance", json=body)

        assert response.status_code == 400
        data = response.get_json()
        assert data["error"] == "Invalid request"
        assert data["details"][0]["field"].startswith("mealData")

    def test_oversized_batch(self, client, token, day):
        meals = [{"date": day(1), "mealType": "lunch", "attended": True}] * 101

        response = client.post("/meal-attendance/batch", json=_batch(token, meals))

        assert response.status_code == 400

    def test_empty_batch(self, client, token):
        assert client.post("/meal-attendance/batch", json=_batch(token, [])).status_code == 400


class TestPatterns:

    def test_patterns_after_ingestion(self, client, token, anonymized_id, day):
        client.post("/meal-attendance/batch", json=_batch(token, _missed_dinners(day)))

        response = client.get(f"/meal-attendance/{anonymized_id}/patterns")

        assert response.status_code == 200
        data = response.get_json()
        assert data["anonymizedId"] == anonymized_id
        assert data["patternAnalysis"]["reason"] == "missed_consecutive"
        assert data["privacySettings"]["optOut"] is False
        assert data["baselinePattern"]["averageMealsPerWeek"] == 0
        assert len(data["recentCheckIns"]) == 1
        assert data["recentCheckIns"][0]["type"] == "meal_concern"
        assert "collegeId" not in data
        assert COLLEGE_ID not in response.get_data(as_text=True)

    def test_unknown_student(self, client):
        assert client.get(f"/meal-attendance/{UNKNOWN_ID}/patterns").status_code == 404

    def test_malformed_id(self, client):
        assert client.get("/meal-attendance/S-1001/patterns").status_code == 400


class TestPrivacy:

    def test_update_echoes_settings(self, client, token, anonymized_id, day, clock):
        client.post("/meal-attendance", json=_single(token, day(1)))

        response = client.put(
            f"/meal-attendance/{anonymized_id}/privacy",
            json={"allowCheckIns": False, "dataRetentionDays": 30},
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["privacySettings"]["allowCheckIns"] is False
        assert data["privacySettings"]["optOut"] is False
        assert data["privacySettings"]["dataRetentionDays"] == 30
        assert data["dataExpiryDate"] == (clock.now + timedelta(days=30)).isoformat() + "Z"

    def test_opted_out_student_data_not_stored(self, client, token, anonymized_id, store, day, clock):
        client.post("/meal-attendance", json=_single(token, day(1)))
        client.put(f"/meal-attendance/{anonymized_id}/privacy", json={"optOut": True})

        response = client.post("/meal-attendance/batch", json=_batch(token, _missed_dinners(day)))

        assert response.status_code == 200
        data = response.get_json()
        assert data["dataStored"] is False
        assert data["recordsProcessed"] == 0
        assert data["patternAnalysis"]["reason"] == "student_opted_out"
        assert data["checkInTriggered"] is False
        assert len(store.find_attendance(anonymized_id, start=clock.now - timedelta(days=30))) == 1
        assert store.find_check_ins(anonymized_id) == []

    @pytest.mark.parametrize("body", [
        {"dataRetentionDays": 0},
        {"dataRetentionDays": 366},
        {"dataRetentionDays": "30"},
        {"optOut": "yes"},
    ])
    def test_invalid_update(self, client, token, anonymized_id, day, body):
        client.post("/meal-attendance", json=_single(token, day(1)))

        response = client.put(f"/meal-attendance/{anonymized_id}/privacy", json=body)

        assert response.status_code == 400

    def test_unknown_student(self, client):
        response = client.put(f"/meal-attendance/{UNKNOWN_ID}/privacy", json={"optOut": True})

        assert response.status_code == 404


class TestCheckInResponse:

    @pytest.fixture
    def check_in_id(self, client, token, anonymized_id, store, day, clock):
        client.post("/meal-attendance/batch", json=_batch(token, _missed_dinners(day)))
        clock.advance(hours=1)
        return store.find_check_ins(anonymized_id)[0].check_in_id

    def _url(self, anonymized_id, check_in_id):
        return f"/meal-attendance/{anonymized_id}/check-in/{check_in_id}/response"

    def test_needs_help(self, client, anonymized_id, check_in_id, store, clock):
        response = client.post(
            self._url(anonymized_id, check_in_id),
            json={"responseType": "needs_help", "responseText": "rough week"},
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["reason"] == "follow_up_created"
        assert data["followUpCheckInId"].startswith("checkin_")
        assert data["nextAllowedCheckIn"] == (clock.now + timedelta(hours=2)).isoformat() + "Z"
        assert len(store.find_check_ins(anonymized_id)) == 2

    def test_doing_fine(self, client, anonymized_id, check_in_id, clock):
        data = client.post(
            self._url(anonymized_id, check_in_id), json={"responseType": "doing_fine"}
        ).get_json()

        assert data["reason"] == "cooldown_extended"
        assert data["nextAllowedCheckIn"] == (clock.now + timedelta(hours=48)).isoformat() + "Z"

    def test_second_response_conflicts(self, client, anonymized_id, check_in_id):
        url = self._url(anonymized_id, check_in_id)
        client.post(url, json={"responseType": "acknowledged"})

        assert client.post(url, json={"responseType": "acknowledged"}).status_code == 409

    def test_invalid_response_type(self, client, anonymized_id, check_in_id):
        response = client.post(self._url(anonymized_id, check_in_id), json={"responseType": "maybe"})

        assert response.status_code == 400

    def test_unknown_check_in(self, client, anonymized_id, check_in_id):
        response = client.post(
            self._url(anonymized_id, "checkin_0000000000000000"),
            json={"responseType": "acknowledged"},
        )

        assert response.status_code == 404

    def test_check_in_of_another_student(self, client, check_in_id):
        response = client.post(
            self._url(UNKNOWN_ID, check_in_id), json={"responseType": "acknowledged"}
        )

        assert response.status_code == 404


class TestIngestionService:

    def test_rejects_empty_batch(self, service, token):
        with pytest.raises(InvalidRequestError):
            service.ingest(token, COLLEGE_ID, [], college_system="pos")

    def test_rejects_oversized_batch(self, service, token, make_observation):
        meals = [make_observation(1)] * (service.config.max_batch_size + 1)

        with pytest.raises(InvalidRequestError):
            service.ingest(token, COLLEGE_ID, meals, college_system="pos")

    def test_token_for_another_college_id(self, service, anonymizer, make_observation):
        token = anonymizer.create_college_token("S-2002")

        with pytest.raises(AuthenticationFailedError):
            service.ingest(token, COLLEGE_ID, [make_observation(1)], college_system="pos")

    def test_yesterdays_token_rejected(self, service, anonymizer, clock, make_observation):
        token = anonymizer.create_college_token(COLLEGE_ID, at=clock.now - timedelta(days=1))

        with pytest.raises(AuthenticationFailedError):
            service.ingest(token, COLLEGE_ID, [make_observation(1)], college_system="pos")

    def test_from_env_defaults(self):
        env = {"ANONYMIZATION_KEY": KEY, "TOKENIZATION_SALT": SALT}
        with patch.dict("os.environ", env, clear=True):
            service = IngestionService.from_env()

        try:
            assert isinstance(service.store, InMemoryMealMonitorStore)
            assert isinstance(service.orchestrator.transport, LoggingTransport)
            assert service.orchestrator.store is service.engine.store
        finally:
            service.orchestrator.worker.stop()
