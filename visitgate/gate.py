"""Contribution gate: the time and membership check run before every visit mutation.

Checks run cheapest first. Status and the window are plain comparisons; the
membership lookup hits the team store, so it runs last. Nothing is cached
between calls because the clock moves and another actor may cancel the visit.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .authorization import Actor, Authorizer
from .clock import Clock, SystemClock, as_aware_utc, format_local, to_local
from .errors import GateDenied
from .lifecycle import ensure_window
from .models import VISIT_SCHEDULED, Visit

logger = structlog.get_logger("visitgate.gate")

DENY_TERMINAL_STATE = "terminal-state"
DENY_NOT_OPEN_YET = "not-open-yet"
DENY_CLOSED = "closed"
DENY_NOT_AUTHORIZED = "not-authorized"


@dataclass(frozen=True)
class Allow:
    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: str
    visit_id: int
    status: str | None = None
    opens_at: datetime | None = None
    closed_at: datetime | None = None

    allowed = False

    @property
    def message(self) -> str:
        if self.reason == DENY_TERMINAL_STATE:
            return f"Visit is {self.status}; contributions are closed"
        if self.reason == DENY_NOT_OPEN_YET and self.opens_at is not None:
            return f"Uploads open at {format_local(self.opens_at)}"
        if self.reason == DENY_CLOSED and self.closed_at is not None:
            return f"Uploads closed at {format_local(self.closed_at)}"
        return "Only members of the visit's team or admins can change this visit"

    def as_detail(self) -> dict:
        return {
            "reason": self.reason,
            "message": self.message,
            "visit_id": self.visit_id,
            "opens_at": self.opens_at.isoformat() if self.opens_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


GateDecision = Allow | Deny


class ContributionGate:
    def __init__(self, db: Session, authorizer: Authorizer, clock: Clock | None = None):
        self.db = db
        self.authorizer = authorizer
        self.clock = clock or SystemClock()

    def can_mutate(self, actor: Actor, visit: Visit, now: datetime | None = None) -> GateDecision:
        moment = as_aware_utc(now) if now is not None else self.clock.now()

        if visit.status != VISIT_SCHEDULED:
            return self._deny(Deny(reason=DENY_TERMINAL_STATE, visit_id=visit.id, status=visit.status), actor)

        window = ensure_window(self.db, visit)
        if moment < window.start:
            return self._deny(
                Deny(reason=DENY_NOT_OPEN_YET, visit_id=visit.id, opens_at=to_local(window.start)),
                actor,
            )
        if moment > window.end:
            return self._deny(
                Deny(reason=DENY_CLOSED, visit_id=visit.id, closed_at=to_local(window.end)),
                actor,
            )

        if not self.authorizer.is_privileged(actor) and not self.authorizer.is_member(actor, visit.team_id):
            return self._deny(Deny(reason=DENY_NOT_AUTHORIZED, visit_id=visit.id), actor)
        return Allow()

    def check(self, actor: Actor, visit_id: int, now: datetime | None = None) -> GateDecision | None:
        visit = self.db.execute(select(Visit).where(Visit.id == visit_id)).scalar_one_or_none()
        if visit is None:
            return None
        return self.can_mutate(actor, visit, now)

    def require(self, actor: Actor, visit: Visit, now: datetime | None = None) -> None:
        decision = self.can_mutate(actor, visit, now)
        if isinstance(decision, Deny):
            raise GateDenied(decision)

    def _deny(self, decision: Deny, actor: Actor) -> Deny:
        logger.info("gate_denied", visit_id=decision.visit_id, actor_id=actor.id, reason=decision.reason)
        return decision
