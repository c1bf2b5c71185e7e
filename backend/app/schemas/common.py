# backend/app/schemas/common.py
"""Shared response shapes."""

from typing import Literal

from .base import StandardizedModel


class HealthResponse(StandardizedModel):
    status: Literal["healthy", "degraded"]
    service: str
    version: str
    environment: str
    database: Literal["ok", "unavailable"]
