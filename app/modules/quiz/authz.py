from __future__ import annotations

from dataclasses import dataclass

from app.modules.quiz.errors import AuthorizationError


@dataclass(frozen=True)
class Identity:
    """Caller as seen by the session engine."""

    id: str
    is_admin: bool = False


class AccessPolicy:
    """Creator-or-admin check used for every privileged transition."""

    def is_creator_or_admin(self, identity: Identity, owner_id: str) -> bool:
        return identity.is_admin or identity.id == str(owner_id)

    def require(self, identity: Identity, owner_id: str) -> None:
        if not self.is_creator_or_admin(identity, owner_id):
            raise AuthorizationError("Unauthorized")
