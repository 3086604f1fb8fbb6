"""Shared utilities for the mealwatch platform."""
from .anonymization import (
    AnonymizationService,
    is_valid_anonymized_id,
    sanitize_for_api,
)

__all__ = ["AnonymizationService", "is_valid_anonymized_id", "sanitize_for_api"]
