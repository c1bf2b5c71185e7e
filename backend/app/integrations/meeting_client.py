"""Meeting-link provider client.

Creates one video room per therapy session and returns its join URL. The
provider is an opaque collaborator; all we rely on is ``POST /rooms``
returning ``{"id", "join_url"}`` and treating a repeated room name as the
same room.
"""

from __future__ import annotations

from datetime import datetime
import logging
import time
from typing import Any, cast
import uuid

import httpx
import jwt
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class MeetingProviderError(RuntimeError):
    """Raised when the meeting provider responds with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MeetingClient:
    """HTTP client for the meeting-link provider."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        if not self._api_key:
            raise ValueError("Meeting provider API key must be provided")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _service_token(self) -> str:
        """Short-lived HS256 token identifying this service to the provider."""
        now = int(time.time())
        payload = {
            "iss": "healnest-booking",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + 300,
        }
        token: str = jwt.encode(payload, self._api_key, algorithm="HS256")
        return token

    def create_meeting(
        self, *, session_id: str, starts_at: datetime, duration_minutes: int
    ) -> str:
        """Create (or fetch) the room for ``session_id`` and return its join URL."""
        body = {
            "name": f"session-{session_id}",
            "starts_at": starts_at.isoformat(),
            "duration_minutes": duration_minutes,
        }
        headers = {"Authorization": f"Bearer {self._service_token()}"}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(f"{self._base_url}/rooms", json=body, headers=headers)
        except httpx.TransportError as exc:
            logger.error("Meeting provider unreachable: %s", exc)
            raise MeetingProviderError(f"Meeting provider unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Meeting provider error %s for session %s: %s",
                response.status_code,
                session_id,
                response.text[:500],
            )
            raise MeetingProviderError(
                f"Meeting provider responded with status {response.status_code}",
                status_code=response.status_code,
            )

        payload = cast(dict[str, Any], response.json())
        join_url = payload.get("join_url")
        if not join_url:
            raise MeetingProviderError("Meeting provider response missing join_url")
        return str(join_url)


class FakeMeetingClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self.calls: list[dict[str, Any]] = []
        self.error: MeetingProviderError | None = None

    def create_meeting(
        self, *, session_id: str, starts_at: datetime, duration_minutes: int
    ) -> str:
        self.calls.append(
            {"session_id": session_id, "starts_at": starts_at, "duration_minutes": duration_minutes}
        )
        if self.error is not None:
            raise self.error
        return f"https://meet.healnest.local/session-{session_id}"
