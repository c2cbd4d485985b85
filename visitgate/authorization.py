from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from .directory import get_user, is_team_member
from .models import ROLE_ADMIN, USER_ROLES


@dataclass(frozen=True)
class Actor:
    id: int
    is_admin: bool = False


class Authorizer(Protocol):
    def is_privileged(self, actor: Actor) -> bool: ...

    def is_member(self, actor: Actor, team_id: int) -> bool: ...


class TeamStoreAuthorizer:
    """Admin override plus team membership looked up in the team store."""

    def __init__(self, db: Session):
        self.db = db

    def is_privileged(self, actor: Actor) -> bool:
        return bool(actor.is_admin)

    def is_member(self, actor: Actor, team_id: int) -> bool:
        return is_team_member(self.db, team_id, actor.id)


def resolve_actor(db: Session, actor_id: int | None, role_hint: str | None = None) -> Actor | None:
    if actor_id is None:
        return None
    user = get_user(db, int(actor_id))
    if user is not None:
        if not user.is_active:
            return None
        return Actor(id=user.id, is_admin=user.role == ROLE_ADMIN)
    hint = (role_hint or "").strip().lower()
    if hint not in USER_ROLES:
        hint = ""
    return Actor(id=int(actor_id), is_admin=hint == ROLE_ADMIN)
