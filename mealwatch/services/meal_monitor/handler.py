"""Meal Monitor HTTP Handler - attendance ingestion and student endpoints.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- POST /meal-attendance - Ingest one meal observation
- POST /meal-attendance/batch - Ingest up to 100 observations
- GET /meal-attendance/<anonymizedId>/patterns - Analysis, baseline, history
- PUT /meal-attendance/<anonymizedId>/privacy - Update privacy settings
- POST /meal-attendance/<anonymizedId>/check-in/<checkInId>/response - Respond

Responses never include a college-issued identifier.
"""
import logging
from typing import Optional

from flask import Flask, jsonify, request
from pydantic import ValidationError

from .ingestion import IngestionError, IngestionService
from .schemas import (
    AttendanceRequest,
    BatchAttendanceRequest,
    CheckInResponseRequest,
    PrivacyUpdateRequest,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Global service instance
_service: Optional[IngestionService] = None


def get_service() -> IngestionService:
    """Get or create the global service instance."""
    global _service
    if _service is None:
        _service = IngestionService.from_env()
    return _service


def set_service(service: Optional[IngestionService]) -> None:
    """Set the global service (for testing)."""
    global _service
    _service = service


def _error_response(e: Exception, event: str):
    if isinstance(e, ValidationError):
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        logger.warning(event, extra={"error_type": "validation", "error_count": len(details)})
        return jsonify({"error": "Invalid request", "details": details}), 400

    if isinstance(e, IngestionError) and e.status_code < 500:
        logger.warning(event, extra={"error_type": type(e).__name__, "status": e.status_code})
        return jsonify({"error": str(e)}), e.status_code

    logger.error(event, extra={"error": str(e), "error_type": type(e).__name__})
    return jsonify({"error": "Internal server error"}), 500


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "meal-monitor"})


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check endpoint."""
    try:
        get_service()
    except Exception as e:
        logger.error("SERVICE_NOT_READY", extra={"error": str(e)})
        return jsonify({"status": "not_ready", "service": "meal-monitor"}), 503
    return jsonify({"status": "ready", "service": "meal-monitor"})


@app.route("/meal-attendance", methods=["POST"])
def ingest_attendance():
    """Ingest one meal observation.

    Request Body:
        {
            "collegeToken": "...",
            "collegeId": "S-1001",
            "mealData": {"date": "2024-03-01", "mealType": "lunch", "attended": true},
            "source": {"collegeSystem": "dining-hall-pos"}
        }

    Response (201, or 200 when the student opted out):
        {
            "success": true,
            "anonymizedId": "3f9a0c...",
            "patternAnalysis": {"isAnomaly": false, "reason": "none", "score": 0.0},
            "checkInTriggered": false
        }
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body required"}), 400

    try:
        payload = AttendanceRequest.model_validate(data)
        result = get_service().ingest(
            college_token=payload.college_token,
            college_id=payload.college_id,
            meals=payload.observations,
            college_system=payload.source.college_system,
            sync_timestamp=payload.source.sync_timestamp,
            enrollment_year=payload.enrollment_year_key,
            department=payload.department,
        )
    except Exception as e:
        return _error_response(e, "ATTENDANCE_INGEST_ERROR")

    return jsonify(result), 201 if result["dataStored"] else 200


@app.route("/meal-attendance/batch", methods=["POST"])
def ingest_attendance_batch():
    """Ingest a batch of observations for one student; analyzed once."""
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body required"}), 400

    try:
        payload = BatchAttendanceRequest.model_validate(data)
        result = get_service().ingest(
            college_token=payload.college_token,
            college_id=payload.college_id,
            meals=payload.observations,
            college_system=payload.source.college_system,
            sync_timestamp=payload.source.sync_timestamp,
            enrollment_year=payload.enrollment_year_key,
            department=payload.department,
        )
    except Exception as e:
        return _error_response(e, "ATTENDANCE_BATCH_INGEST_ERROR")

    return jsonify(result), 201 if result["dataStored"] else 200


@app.route("/meal-attendance/<anonymized_id>/patterns", methods=["GET"])
def get_patterns(anonymized_id: str):
    """Current analysis, baseline, recent check-ins and privacy settings."""
    try:
        result = get_service().get_patterns(anonymized_id)
    except Exception as e:
        return _error_response(e, "PATTERN_QUERY_ERROR")

    return jsonify(result)


@app.route("/meal-attendance/<anonymized_id>/privacy", methods=["PUT"])
def update_privacy(anonymized_id: str):
    """Update privacy settings.

    Request Body:
        {"optOut": true, "allowCheckIns": false, "dataRetentionDays": 30}
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body required"}), 400

    try:
        payload = PrivacyUpdateRequest.model_validate(data)
        result = get_service().update_privacy(
            anonymized_id,
            opt_out=payload.opt_out,
            allow_check_ins=payload.allow_check_ins,
            data_retention_days=payload.data_retention_days,
        )
    except Exception as e:
        return _error_response(e, "PRIVACY_UPDATE_ERROR")

    return jsonify(result)


@app.route(
    "/meal-attendance/<anonymized_id>/check-in/<check_in_id>/response",
    methods=["POST"],
)
def respond_to_check_in(anonymized_id: str, check_in_id: str):
    """Record a student's response to a check-in.

    Request Body:
        {"responseType": "needs_help", "responseText": "optional"}
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body required"}), 400

    try:
        payload = CheckInResponseRequest.model_validate(data)
        result = get_service().respond_to_check_in(
            anonymized_id,
            check_in_id,
            payload.response_type,
            response_text=payload.response_text,
        )
    except Exception as e:
        return _error_response(e, "CHECK_IN_RESPONSE_ERROR")

    return jsonify(result)
