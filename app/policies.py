"""
Authorization policies.

Identity is established upstream; this service receives the actor as
trusted request headers and only decides whether that actor may perform
a write.  Each endpoint lists the policies it needs and ``authorize``
checks all of them.
"""
from dataclasses import dataclass

from pydantic import BaseModel

from app.errors import AuthenticationRequired, PermissionDenied

ADMIN = "admin"
EDITOR = "editor"
READER = "reader"


class Actor(BaseModel):
    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


@dataclass(frozen=True)
class RequireRole:
    roles: frozenset[str]

    def check(self, actor: Actor, owner_id: int | None = None) -> None:
        if actor.role not in self.roles:
            required = ", ".join(sorted(self.roles))
            raise PermissionDenied(f"Access denied. Required role(s): {required}. Your role: {actor.role}")


@dataclass(frozen=True)
class RequireOwnerOrAdmin:
    def check(self, actor: Actor, owner_id: int | None = None) -> None:
        if actor.is_admin:
            return
        if owner_id is None or actor.id != owner_id:
            raise PermissionDenied("Access denied. You can only modify your own content.")


ADMIN_ONLY = RequireRole(frozenset({ADMIN}))
EDITORS = RequireRole(frozenset({ADMIN, EDITOR}))
ANY_USER = RequireRole(frozenset({ADMIN, EDITOR, READER}))


def authorize(actor: Actor | None, *policies, owner_id: int | None = None) -> Actor:
    """Check every policy against *actor*; return the actor on success."""
    if actor is None:
        raise AuthenticationRequired("Authentication required")
    for policy in policies:
        policy.check(actor, owner_id=owner_id)
    return actor
