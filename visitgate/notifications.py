"""In-app notifications and the upload-window sweep.

Each window event reaches a team at most once per visit. The per-visit flag
is claimed with a conditional UPDATE inside the same transaction that inserts
the notification rows, so overlapping sweeps cannot notify a team twice.
"""

import json
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .clock import as_aware_utc, format_local, to_utc_naive
from .directory import get_members
from .lifecycle import ensure_window
from .models import (
    NOTIFICATION_TYPES,
    VISIT_CANCELLED,
    VISIT_SCHEDULED,
    Notification,
    Visit,
    utc_now_naive,
)

logger = structlog.get_logger("visitgate.notifications")

WINDOW_OPEN = "window-open"
WINDOW_CLOSING = "window-closing"
WINDOW_CLOSED = "window-closed"
WINDOW_EVENTS = (WINDOW_OPEN, WINDOW_CLOSING, WINDOW_CLOSED)

CLOSING_NOTICE = timedelta(hours=1)

_EVENT_FLAGS = {
    WINDOW_OPEN: "window_open_notified",
    WINDOW_CLOSING: "window_closing_notified",
    WINDOW_CLOSED: "window_closed_notified",
}


def notify_users(
    db: Session,
    user_ids,
    *,
    title: str,
    message: str,
    type: str = "system",
    link: str | None = None,
    meta: dict | None = None,
) -> list[Notification]:
    """Stage one notification per user. The caller commits."""
    kind = type if type in NOTIFICATION_TYPES else "system"
    payload = json.dumps(meta or {}, ensure_ascii=True, sort_keys=True, default=str)
    rows = [
        Notification(
            user_id=int(user_id),
            title=title,
            message=message,
            type=kind,
            link=link,
            meta_json=payload,
            created_at=utc_now_naive(),
        )
        for user_id in user_ids
    ]
    db.add_all(rows)
    return rows


def notification_meta(row: Notification) -> dict:
    try:
        return json.loads(row.meta_json or "{}")
    except ValueError:
        return {}


def list_notifications(
    db: Session,
    user_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    q = db.query(Notification).filter(Notification.user_id == int(user_id))
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return (
        q.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def mark_read(db: Session, user_id: int, notification_id: int) -> Notification | None:
    row = db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == int(user_id))
    ).scalar_one_or_none()
    if row is None:
        return None
    if not row.is_read:
        row.is_read = True
        db.commit()
        db.refresh(row)
    return row


def delete_for_user(db: Session, user_id: int) -> int:
    result = db.execute(delete(Notification).where(Notification.user_id == int(user_id)))
    return int(result.rowcount or 0)


def _message(event: str, visit: Visit) -> tuple[str, str, str, dict]:
    start = as_aware_utc(visit.window_start_utc)
    end = as_aware_utc(visit.window_end_utc)
    if event == WINDOW_OPEN:
        return (
            "Uploads open now",
            f"You can now upload visit media until {format_local(end)}.",
            "/visit-report.html",
            {"visit_id": visit.id, "window_start": start.isoformat()},
        )
    if event == WINDOW_CLOSING:
        return (
            "Uploads close in 1 hour",
            f"Finish your uploads soon. The upload window closes at {format_local(end)}.",
            "/visit-report.html",
            {"visit_id": visit.id, "window_end": end.isoformat()},
        )
    return (
        "Uploads are now closed",
        f"The upload window ended at {format_local(end)}.",
        "/visits.html",
        {"visit_id": visit.id, "window_end": end.isoformat()},
    )


def _due_visits(db: Session, event: str, now: datetime) -> list[Visit]:
    flag = getattr(Visit, _EVENT_FLAGS[event])
    q = db.query(Visit).filter(
        flag.is_not(True),
        Visit.window_start_utc.is_not(None),
        Visit.window_end_utc.is_not(None),
    )
    if event == WINDOW_OPEN:
        q = q.filter(
            Visit.status == VISIT_SCHEDULED,
            Visit.window_start_utc <= now,
            Visit.window_end_utc > now,
        )
    elif event == WINDOW_CLOSING:
        q = q.filter(
            Visit.status == VISIT_SCHEDULED,
            Visit.window_end_utc > now,
            Visit.window_end_utc <= now + CLOSING_NOTICE,
        )
    else:
        q = q.filter(Visit.status != VISIT_CANCELLED, Visit.window_end_utc <= now)
    return q.order_by(Visit.id.asc()).all()


def _claim(db: Session, visit_id: int, event: str) -> bool:
    flag_name = _EVENT_FLAGS[event]
    flag = getattr(Visit, flag_name)
    result = db.execute(
        update(Visit)
        .where(Visit.id == visit_id, or_(flag.is_(None), flag.is_(False)))
        .values({flag_name: True})
    )
    return int(result.rowcount or 0) == 1


def _ensure_scheduled_windows(db: Session) -> None:
    legacy = (
        db.query(Visit)
        .filter(
            Visit.status == VISIT_SCHEDULED,
            or_(Visit.window_start_utc.is_(None), Visit.window_end_utc.is_(None)),
        )
        .all()
    )
    for visit in legacy:
        ensure_window(db, visit)


def sweep_window_notifications(db: Session, now: datetime | None = None, dry_run: bool = False) -> dict:
    moment = to_utc_naive(now) if now is not None else utc_now_naive()
    summary = {event: 0 for event in WINDOW_EVENTS}
    summary.update({"notifications": 0, "failed": 0})

    if not dry_run:
        _ensure_scheduled_windows(db)

    for event in WINDOW_EVENTS:
        for visit in _due_visits(db, event, moment):
            members = sorted(get_members(db, visit.team_id))
            if dry_run:
                summary[event] += 1
                continue
            title, message, link, meta = _message(event, visit)
            try:
                if not _claim(db, visit.id, event):
                    db.rollback()
                    continue
                notify_users(db, members, title=title, message=message, type="visit", link=link, meta=meta)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                summary["failed"] += 1
                logger.warning("window_notify_failed", visit_id=visit.id, window_event=event, exc_info=exc)
                continue
            summary[event] += 1
            summary["notifications"] += len(members)
            logger.info("window_notified", visit_id=visit.id, window_event=event, recipients=len(members))
    return summary
