"""Principal for authenticated API callers."""

from __future__ import annotations

from dataclasses import dataclass

from .core.enums import RoleName
from .models.therapy_session import CancelledBy


@dataclass(frozen=True)
class UserPrincipal:
    """A client or therapist, as identified by the access token."""

    user_id: str
    role: RoleName

    @property
    def id(self) -> str:
        return self.user_id

    @property
    def is_client(self) -> bool:
        return self.role == RoleName.CLIENT

    @property
    def is_therapist(self) -> bool:
        return self.role == RoleName.THERAPIST

    def as_cancelled_by(self) -> CancelledBy:
        return CancelledBy.THERAPIST if self.is_therapist else CancelledBy.CLIENT
