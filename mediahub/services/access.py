"""Capability checks delegated to the external authorization layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from .storage import MediaRecord


@dataclass(frozen=True)
class Requester:
    """Identity asserted by the upstream authentication gateway."""

    user_id: Optional[str] = None
    role: str = "viewer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AccessPolicy(Protocol):
    def can_access(self, record: MediaRecord, requester: Requester) -> bool:
        """Return ``True`` when *requester* may stream *record*."""


class AllowAllPolicy:
    """Policy used when authorization is enforced elsewhere."""

    def can_access(self, record: MediaRecord, requester: Requester) -> bool:
        return True


class RoleAccessPolicy:
    """Admins and owners always pass; viewers only see media marked safe."""

    def can_access(self, record: MediaRecord, requester: Requester) -> bool:
        if requester.is_admin:
            return True
        if requester.user_id is not None and requester.user_id == record.owner_id:
            return True
        if requester.role == "viewer":
            return record.state == "safe"
        return True


__all__ = ["AccessPolicy", "AllowAllPolicy", "Requester", "RoleAccessPolicy"]
