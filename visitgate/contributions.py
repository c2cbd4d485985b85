import json
from dataclasses import dataclass
from datetime import datetime, time, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .authorization import Actor
from .clock import LOCAL_TZ, as_aware_utc, to_utc_naive
from .directory import get_team
from .gate import ContributionGate
from .lifecycle import transition_to_cancelled, transition_to_completed
from .models import (
    GALLERY_MEDIA_KINDS,
    MEDIA_KINDS,
    VISIT_CANCELLED,
    VISIT_COMPLETED,
    VISIT_SCHEDULED,
    VISIT_STATUSES,
    Visit,
    VisitMedia,
    utc_now_naive,
)
from .windows import compute_window, local_calendar_day

logger = structlog.get_logger("visitgate.contributions")

EDITABLE_VISIT_FIELDS = {"name", "assigned_class"}


@dataclass(frozen=True)
class MediaDescriptor:
    kind: str
    filename: str
    original_name: str
    path: str
    size: int
    mimetype: str


def _local_day_bounds_utc(scheduled_date: datetime) -> tuple[datetime, datetime]:
    day = local_calendar_day(scheduled_date)
    start = datetime.combine(day, time.min, tzinfo=LOCAL_TZ)
    return to_utc_naive(start), to_utc_naive(start + timedelta(days=1))


def get_visit(db: Session, visit_id: int) -> Visit | None:
    return db.execute(select(Visit).where(Visit.id == visit_id)).scalar_one_or_none()


def create_visit(
    db: Session,
    team_id: int,
    scheduled_date: datetime,
    name: str = "",
    assigned_class: str | None = None,
) -> Visit:
    if get_team(db, team_id) is None:
        raise ValueError("Team not found")

    day_start, day_end = _local_day_bounds_utc(scheduled_date)
    clash = db.execute(
        select(Visit.id).where(
            Visit.team_id == team_id,
            Visit.scheduled_date >= day_start,
            Visit.scheduled_date < day_end,
            Visit.status.in_([VISIT_SCHEDULED, VISIT_COMPLETED]),
        )
    ).first()
    if clash:
        raise ValueError("Team already has a visit scheduled on this date")

    start, end = compute_window(scheduled_date).as_naive_utc()
    visit = Visit(
        name=(name or "").strip(),
        scheduled_date=to_utc_naive(as_aware_utc(scheduled_date)),
        team_id=team_id,
        assigned_class=(assigned_class or "").strip() or None,
        status=VISIT_SCHEDULED,
        window_start_utc=start,
        window_end_utc=end,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(visit)
    db.commit()
    db.refresh(visit)
    logger.info("visit_created", visit_id=visit.id, team_id=team_id)
    return visit


def list_visits(
    db: Session,
    status: str | None = None,
    team_id: int | None = None,
    year: int | None = None,
    month: int | None = None,
) -> list[Visit]:
    q = db.query(Visit)
    if status and status in VISIT_STATUSES:
        q = q.filter(Visit.status == status)
    if team_id is not None:
        q = q.filter(Visit.team_id == team_id)
    if year is not None and month is not None:
        first = datetime(year, month, 1, tzinfo=LOCAL_TZ)
        following = datetime(year + (month // 12), (month % 12) + 1, 1, tzinfo=LOCAL_TZ)
        q = q.filter(
            Visit.scheduled_date >= to_utc_naive(first),
            Visit.scheduled_date < to_utc_naive(following),
        )
    return q.order_by(Visit.scheduled_date.desc(), Visit.id.desc()).all()


def list_visit_media(db: Session, visit_id: int) -> list[VisitMedia]:
    return (
        db.query(VisitMedia)
        .filter(VisitMedia.visit_id == visit_id)
        .order_by(VisitMedia.id.asc())
        .all()
    )


def upload_media(
    db: Session,
    gate: ContributionGate,
    actor: Actor,
    visit_id: int,
    files: list[MediaDescriptor],
    now: datetime | None = None,
) -> list[VisitMedia] | None:
    visit = get_visit(db, visit_id)
    if visit is None:
        return None
    for item in files:
        if item.kind not in MEDIA_KINDS:
            raise ValueError(f"Invalid media kind: {item.kind}")
    if not files:
        raise ValueError("No files to upload")

    # Rows are built in full before the check; the insert is the append.
    rows = [
        VisitMedia(
            visit_id=visit.id,
            kind=item.kind,
            filename=item.filename,
            original_name=item.original_name,
            path=item.path,
            size=int(item.size),
            mimetype=item.mimetype,
            uploaded_by=actor.id,
            uploaded_at=utc_now_naive(),
        )
        for item in files
    ]
    gate.require(actor, visit, now)
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    logger.info("visit_media_uploaded", visit_id=visit.id, actor_id=actor.id, count=len(rows))
    return rows


def delete_media(
    db: Session,
    gate: ContributionGate,
    actor: Actor,
    visit_id: int,
    media_id: int,
    now: datetime | None = None,
) -> bool | None:
    visit = get_visit(db, visit_id)
    if visit is None:
        return None
    gate.require(actor, visit, now)
    result = db.execute(
        delete(VisitMedia).where(VisitMedia.id == media_id, VisitMedia.visit_id == visit.id)
    )
    db.commit()
    removed = int(result.rowcount or 0) > 0
    if removed:
        logger.info("visit_media_deleted", visit_id=visit.id, media_id=media_id, actor_id=actor.id)
    return removed


def edit_visit(
    db: Session,
    gate: ContributionGate,
    actor: Actor,
    visit_id: int,
    changes: dict,
    now: datetime | None = None,
) -> Visit | None:
    visit = get_visit(db, visit_id)
    if visit is None:
        return None
    unknown = set(changes) - EDITABLE_VISIT_FIELDS
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValueError("No fields to update")
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValueError("name cannot be empty")

    gate.require(actor, visit, now)
    for field_name, value in changes.items():
        setattr(visit, field_name, value)
    visit.updated_at = utc_now_naive()
    db.commit()
    db.refresh(visit)
    return visit


def submit_report(
    db: Session,
    gate: ContributionGate,
    actor: Actor,
    visit_id: int,
    report_fields: dict,
    now: datetime | None = None,
) -> Visit | None:
    visit = get_visit(db, visit_id)
    if visit is None:
        return None
    return transition_to_completed(db, visit, report_fields, actor=actor, gate=gate, now=now)


def cancel_visit(db: Session, actor: Actor, visit_id: int, now: datetime | None = None) -> Visit | None:
    if not actor.is_admin:
        raise PermissionError("Only admins can cancel visits")
    visit = get_visit(db, visit_id)
    if visit is None:
        return None
    return transition_to_cancelled(db, visit, actor=actor, now=now)


def visit_report(visit: Visit) -> dict:
    if not visit.report_json:
        return {}
    try:
        return json.loads(visit.report_json)
    except Exception:
        return {}


def visit_stats(db: Session, team_id: int | None = None, months: int = 6) -> dict:
    status_q = db.query(Visit.status, func.count(Visit.id))
    team_q = db.query(Visit.team_id, func.count(Visit.id))
    rows_q = db.query(Visit.scheduled_date, Visit.status, Visit.report_json)
    if team_id is not None:
        status_q = status_q.filter(Visit.team_id == team_id)
        team_q = team_q.filter(Visit.team_id == team_id)
        rows_q = rows_q.filter(Visit.team_id == team_id)

    by_status = {VISIT_SCHEDULED: 0, VISIT_COMPLETED: 0, VISIT_CANCELLED: 0}
    for status, count in status_q.group_by(Visit.status).all():
        by_status[status] = int(count)
    by_team = [
        {"team_id": int(tid), "visits": int(count)}
        for tid, count in team_q.group_by(Visit.team_id).order_by(Visit.team_id.asc()).all()
    ]

    children: list[int] = []
    monthly: dict[tuple[int, int], dict] = {}
    for scheduled_date, status, report_json in rows_q.all():
        day = local_calendar_day(scheduled_date)
        bucket = monthly.setdefault(
            (day.year, day.month),
            {"year": day.year, "month": day.month, "visits": 0, "completed_visits": 0, "children": 0},
        )
        bucket["visits"] += 1
        if status == VISIT_COMPLETED:
            bucket["completed_visits"] += 1
        count = _children_count(report_json)
        if count is not None:
            children.append(count)
            bucket["children"] += count

    total_children = sum(children)
    return {
        "total_visits": sum(by_status.values()),
        "by_status": by_status,
        "by_team": by_team,
        "total_children": total_children,
        "average_children": round(total_children / len(children), 2) if children else 0.0,
        "monthly": [monthly[key] for key in sorted(monthly, reverse=True)[: max(1, int(months))]],
    }


def _children_count(report_json: str | None) -> int | None:
    if not report_json:
        return None
    try:
        value = json.loads(report_json).get("children_count")
    except (ValueError, AttributeError):
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def visit_gallery(db: Session, visit_id: int) -> dict | None:
    visit = get_visit(db, visit_id)
    if visit is None:
        return None
    grouped: dict[str, list[VisitMedia]] = {kind: [] for kind in MEDIA_KINDS}
    for row in list_visit_media(db, visit.id):
        grouped.setdefault(row.kind, []).append(row)
    return {"visit": visit, **grouped}


def gallery_media(
    db: Session,
    team_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    recent_days: int | None = None,
    now: datetime | None = None,
    oldest_first: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[tuple[VisitMedia, Visit]], int]:
    """Photos and videos across completed visits, newest visit first by default."""
    q = (
        db.query(VisitMedia, Visit)
        .join(Visit, VisitMedia.visit_id == Visit.id)
        .filter(Visit.status == VISIT_COMPLETED, VisitMedia.kind.in_(GALLERY_MEDIA_KINDS))
    )
    if team_id is not None:
        q = q.filter(Visit.team_id == team_id)
    if start is not None and end is not None:
        q = q.filter(Visit.scheduled_date >= to_utc_naive(start), Visit.scheduled_date <= to_utc_naive(end))
    if recent_days is not None:
        anchor = to_utc_naive(now) if now is not None else utc_now_naive()
        q = q.filter(Visit.scheduled_date >= anchor - timedelta(days=max(1, int(recent_days))))

    total = q.count()
    order = Visit.scheduled_date.asc() if oldest_first else Visit.scheduled_date.desc()
    rows = (
        q.order_by(order, VisitMedia.id.asc())
        .offset(max(0, int(offset)))
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return [(media, visit) for media, visit in rows], total
