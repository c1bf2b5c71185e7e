"""Application-wide constants for the HealNest booking service."""

from __future__ import annotations

BRAND_NAME = "HealNest"

API_TITLE = f"{BRAND_NAME} Booking API"
API_DESCRIPTION = "Slot reservation, Khalti payment orchestration and session registry."
API_VERSION = "1.0.0"

# Text constraints
MAX_REASON_LENGTH = 500
MAX_PURCHASE_ORDER_NAME_LENGTH = 100

# Query limits
DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 500

# Slot constraints
MIN_SLOT_DURATION_MINUTES = 15
MAX_SLOT_DURATION_MINUTES = 240

# Time-of-day buckets used by the availability filter (clinic-local hours, end exclusive)
TIME_OF_DAY_WINDOWS = {
    "morning": (5, 12),
    "afternoon": (12, 17),
    "evening": (17, 24),
}

# Khalti settles in paisa
PAISA_PER_RUPEE = 100
PAYMENT_METHOD_KHALTI = "khalti"
