"""Identity anonymization for ingested attendance data.

No real student identifier is ever stored. College systems send their own
natural keys; this module turns them into deterministic, keyed pseudonyms
and authenticates which institution is pushing data.

The same natural key always maps to the same anonymized ID while the
anonymization key stays the same. Rotating the key invalidates every
existing mapping.
"""
import hashlib
import hmac
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

ANONYMIZED_ID_LENGTH = 16
COLLEGE_TOKEN_LENGTH = 24
MIN_KEY_LENGTH = 32
SECONDS_PER_DAY = 24 * 60 * 60

ANONYMIZED_ID_PATTERN = re.compile(r"^[a-f0-9]{16}$")

# Fields that could re-identify a person; never allowed across the API boundary
IDENTIFYING_FIELDS = frozenset({
    "collegeId",
    "college_id",
    "studentId",
    "student_id",
    "email",
    "phone",
})

UNKNOWN_KEY_PART = "unknown"


def _canonical(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


def is_valid_anonymized_id(value: Any) -> bool:
    """Check that a value looks like an anonymized ID (16 lowercase hex chars)."""
    return isinstance(value, str) and bool(ANONYMIZED_ID_PATTERN.match(value))


def sanitize_for_api(record: Dict[str, Any]) -> Dict[str, Any]:
    """Strip re-identifying fields before a record leaves the system.

    Returns a new dict; the input is not modified. Applying it twice gives
    the same result as applying it once.

    Args:
        record: Outgoing payload

    Returns:
        Copy of the payload without identifying fields
    """
    sanitized = {
        key: value for key, value in record.items()
        if key not in IDENTIFYING_FIELDS
    }
    if "id" in sanitized:
        sanitized["id"] = sanitized.get("anonymizedId") or sanitized["id"]
    return sanitized


class AnonymizationService:
    """Keyed hashing of natural student keys and college tokens.

    Both secrets are owned by the instance; nothing is stored at module
    level so services and tests can run with independent keys.
    """

    def __init__(
        self,
        anonymization_key: str,
        tokenization_salt: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize with secrets.

        Args:
            anonymization_key: HMAC key for anonymized IDs
            tokenization_salt: HMAC key for daily college tokens
            clock: Source of the current UTC time (injected for testing)

        Raises:
            ValueError: If either secret is empty or too short
        """
        for name, value in (
            ("anonymization_key", anonymization_key),
            ("tokenization_salt", tokenization_salt),
        ):
            if not value or len(value) < MIN_KEY_LENGTH:
                logger.critical(
                    "ANONYMIZATION_KEY_CONFIGURATION_FAILED",
                    extra={"key_name": name, "min_length": MIN_KEY_LENGTH}
                )
                raise ValueError(
                    f"{name} must be at least {MIN_KEY_LENGTH} characters"
                )

        self._anonymization_key = anonymization_key.encode()
        self._tokenization_salt = tokenization_salt.encode()
        self._clock = clock or datetime.utcnow

        logger.info(
            "ANONYMIZATION_SERVICE_INITIALIZED",
            extra={
                "anonymized_id_length": ANONYMIZED_ID_LENGTH,
                "college_token_length": COLLEGE_TOKEN_LENGTH,
            }
        )

    @classmethod
    def from_env(cls) -> "AnonymizationService":
        """Create service from environment variables.

        Environment variables:
            ANONYMIZATION_KEY: HMAC key for anonymized IDs
            TOKENIZATION_SALT: HMAC key for college tokens
        """
        return cls(
            anonymization_key=os.getenv("ANONYMIZATION_KEY", ""),
            tokenization_salt=os.getenv("TOKENIZATION_SALT", ""),
        )

    @classmethod
    def from_secrets_manager(
        cls,
        secret_arn: str,
        region: str = "us-east-1",
    ) -> "AnonymizationService":
        """Load both secrets from AWS Secrets Manager.

        The secret must be a JSON object with ``anonymization_key`` and
        ``tokenization_salt`` entries.
        """
        import boto3

        try:
            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])
        except Exception as e:
            logger.error(
                "ANONYMIZATION_SECRET_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        return cls(
            anonymization_key=secret.get("anonymization_key", ""),
            tokenization_salt=secret.get("tokenization_salt", ""),
        )

    def create_anonymized_id(
        self,
        college_id: str,
        enrollment_year: Any = UNKNOWN_KEY_PART,
        department: str = UNKNOWN_KEY_PART,
    ) -> str:
        """Map a natural student key to its anonymized ID.

        Args:
            college_id: Institution-issued student identifier
            enrollment_year: Year of enrollment, if the college sends it
            department: Department, if the college sends it

        Returns:
            16-char lowercase hex token

        Example:
            >>> service.create_anonymized_id("S-1001", 2024, "physics")
            '3f9a0c...'  # 16-char hex string
        """
        payload = _canonical({
            "collegeId": str(college_id),
            "enrollmentYear": str(enrollment_year),
            "department": str(department),
        })
        digest = hmac.new(self._anonymization_key, payload, hashlib.sha256)
        return digest.hexdigest()[:ANONYMIZED_ID_LENGTH]

    def create_college_token(
        self,
        college_id: str,
        at: Optional[datetime] = None,
    ) -> str:
        """Create the daily-rotating token for a college identifier.

        Args:
            college_id: Identifier the token authenticates
            at: Point in time whose day bucket is used (defaults to now)

        Returns:
            24-char lowercase hex token
        """
        when = at or self._clock()
        day_bucket = int(_epoch_seconds(when) // SECONDS_PER_DAY)
        payload = _canonical({"collegeId": str(college_id), "day": day_bucket})
        digest = hmac.new(self._tokenization_salt, payload, hashlib.sha256)
        return digest.hexdigest()[:COLLEGE_TOKEN_LENGTH]

    def verify_college_token(self, token: Any, college_id: str) -> bool:
        """Recompute today's token and compare in constant time."""
        if not isinstance(token, str) or not token:
            return False
        expected = self.create_college_token(college_id)
        return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def _epoch_seconds(when: datetime) -> float:
    # Naive datetimes are UTC throughout this code base
    if when.tzinfo is None:
        return (when - datetime(1970, 1, 1)).total_seconds()
    return when.timestamp()
