import json
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from .clock import to_utc_naive
from .errors import InvalidTransition
from .models import (
    VISIT_CANCELLED,
    VISIT_COMPLETED,
    VISIT_SCHEDULED,
    Visit,
    utc_now_naive,
)
from .windows import Window, compute_window, window_from_columns

if TYPE_CHECKING:
    from .authorization import Actor
    from .gate import ContributionGate

logger = structlog.get_logger("visitgate.lifecycle")

ALLOWED_VISIT_STATUS_TRANSITIONS = {
    VISIT_SCHEDULED: {VISIT_COMPLETED, VISIT_CANCELLED},
    VISIT_COMPLETED: set(),
    VISIT_CANCELLED: set(),
}


def ensure_window(db: Session, visit: Visit) -> Window:
    """Return the visit's window, computing and persisting it when missing.

    The write only fills columns that are still NULL. Concurrent callers
    derive the same bounds from the same scheduled date, so whichever write
    lands first is the value everyone reads back.
    """
    existing = window_from_columns(visit.window_start_utc, visit.window_end_utc)
    if existing is not None:
        return existing

    window = compute_window(visit.scheduled_date)
    start, end = window.as_naive_utc()
    db.execute(
        update(Visit)
        .where(
            Visit.id == visit.id,
            or_(Visit.window_start_utc.is_(None), Visit.window_end_utc.is_(None)),
        )
        .values(window_start_utc=start, window_end_utc=end)
    )
    db.commit()
    db.refresh(visit)
    logger.info("visit_window_backfilled", visit_id=visit.id, window_start=start.isoformat())
    return window_from_columns(visit.window_start_utc, visit.window_end_utc) or window


def _require_transition(visit: Visit, target_status: str) -> None:
    current = (visit.status or VISIT_SCHEDULED).strip().lower()
    if target_status not in ALLOWED_VISIT_STATUS_TRANSITIONS.get(current, set()):
        raise InvalidTransition(visit.id, current, target_status)


def _apply_transition(db: Session, visit: Visit, target_status: str, values: dict) -> Visit:
    # Conditional on the current status so a concurrent cancel cannot be overwritten.
    result = db.execute(
        update(Visit)
        .where(Visit.id == visit.id, Visit.status == VISIT_SCHEDULED)
        .values(status=target_status, updated_at=utc_now_naive(), **values)
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        db.refresh(visit)
        raise InvalidTransition(visit.id, visit.status, target_status)
    db.commit()
    db.refresh(visit)
    logger.info("visit_status_changed", visit_id=visit.id, from_status=VISIT_SCHEDULED, to_status=target_status)
    return visit


def transition_to_completed(
    db: Session,
    visit: Visit,
    report_fields: dict,
    *,
    actor: "Actor",
    gate: "ContributionGate",
    now: datetime | None = None,
) -> Visit:
    _require_transition(visit, VISIT_COMPLETED)
    moment = now or gate.clock.now()
    gate.require(actor, visit, moment)
    return _apply_transition(
        db,
        visit,
        VISIT_COMPLETED,
        {
            "report_json": json.dumps(report_fields or {}, ensure_ascii=True, sort_keys=True, default=str),
            "submitted_by": actor.id,
            "submission_date": to_utc_naive(moment),
        },
    )


def transition_to_cancelled(db: Session, visit: Visit, *, actor: "Actor", now: datetime | None = None) -> Visit:
    _require_transition(visit, VISIT_CANCELLED)
    return _apply_transition(
        db,
        visit,
        VISIT_CANCELLED,
        {
            "cancelled_by": actor.id,
            "cancelled_at": to_utc_naive(now) if now is not None else utc_now_naive(),
        },
    )
