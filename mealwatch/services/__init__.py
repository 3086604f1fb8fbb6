"""Mealwatch services.

- meal_monitor: attendance ingestion, pattern detection and check-ins.
  Student identity is anonymized at the boundary; nothing downstream
  ever sees a college-issued identifier.
"""
