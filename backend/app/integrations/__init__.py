"""External service integrations for the HealNest booking service."""

from .khalti_client import FakeKhaltiClient, KhaltiClient, KhaltiError
from .meeting_client import FakeMeetingClient, MeetingClient, MeetingProviderError

__all__ = [
    "FakeKhaltiClient",
    "FakeMeetingClient",
    "KhaltiClient",
    "KhaltiError",
    "MeetingClient",
    "MeetingProviderError",
]
