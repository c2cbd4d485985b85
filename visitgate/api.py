from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from .authorization import Actor, TeamStoreAuthorizer, resolve_actor
from .clock import Clock, SystemClock, as_aware_utc, to_local
from .contributions import (
    MediaDescriptor,
    cancel_visit,
    create_visit,
    delete_media,
    edit_visit,
    gallery_media,
    get_visit,
    list_visit_media,
    list_visits,
    submit_report,
    upload_media,
    visit_gallery,
    visit_report,
    visit_stats,
)
from .db import get_db
from .errors import GateDenied, InvalidTransition
from .gate import ContributionGate, Deny
from .lifecycle import ensure_window
from .models import Notification, Visit, VisitMedia
from .notifications import list_notifications, mark_read, notification_meta
from .request_context import actor_id_ctx, actor_role_ctx
from .schemas import (
    GalleryItemOut,
    GalleryPageOut,
    GateOut,
    MediaOut,
    MediaUpload,
    NotificationOut,
    ReportSubmit,
    VisitCreate,
    VisitGalleryOut,
    VisitOut,
    VisitStatsOut,
    VisitUpdate,
    WindowOut,
)

router = APIRouter(prefix="/api")


def get_clock() -> Clock:
    return SystemClock()


def get_actor(
    db: Session = Depends(get_db),
    x_actor_id: Optional[int] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    actor_id = x_actor_id if x_actor_id is not None else actor_id_ctx.get()
    actor = resolve_actor(db, actor_id, x_actor_role or actor_role_ctx.get())
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Actor identity is required (X-Actor-Id)",
        )
    return actor


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return actor


def get_gate(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ContributionGate:
    return ContributionGate(db, TeamStoreAuthorizer(db), clock)


def _gate_denied(exc: GateDenied) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.decision.as_detail())


def _to_media_out(row: VisitMedia) -> MediaOut:
    return MediaOut(
        id=row.id,
        visit_id=row.visit_id,
        kind=row.kind,
        filename=row.filename,
        original_name=row.original_name,
        path=row.path,
        size=int(row.size),
        mimetype=row.mimetype,
        uploaded_by=row.uploaded_by,
        uploaded_at=row.uploaded_at,
    )


def _to_visit_out(db: Session, v: Visit, with_media: bool = True) -> VisitOut:
    media = list_visit_media(db, v.id) if with_media else []
    return VisitOut(
        id=v.id,
        name=v.name or "",
        team_id=v.team_id,
        assigned_class=v.assigned_class,
        scheduled_date=as_aware_utc(v.scheduled_date),
        status=v.status,
        window_start=as_aware_utc(v.window_start_utc) if v.window_start_utc else None,
        window_end=as_aware_utc(v.window_end_utc) if v.window_end_utc else None,
        report=visit_report(v),
        submitted_by=v.submitted_by,
        submission_date=as_aware_utc(v.submission_date) if v.submission_date else None,
        media=[_to_media_out(m) for m in media],
    )


def _to_notification_out(row: Notification) -> NotificationOut:
    return NotificationOut(
        id=row.id,
        title=row.title,
        message=row.message,
        type=row.type,
        link=row.link,
        meta=notification_meta(row),
        is_read=bool(row.is_read),
        created_at=row.created_at,
    )


@router.post("/visits", response_model=VisitOut)
def add_visit(
    payload: VisitCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        v = create_visit(
            db=db,
            team_id=payload.team_id,
            scheduled_date=payload.scheduled_date,
            name=payload.name,
            assigned_class=payload.assigned_class,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_visit_out(db, v)


@router.get("/visits", response_model=List[VisitOut])
def get_visits(
    status_filter: Optional[str] = Query(None, alias="status"),
    team_id: Optional[int] = Query(None),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    rows = list_visits(db, status=status_filter, team_id=team_id, year=year, month=month)
    return [_to_visit_out(db, v, with_media=False) for v in rows]


@router.get("/visits/stats", response_model=VisitStatsOut)
def get_visit_stats(
    team_id: Optional[int] = Query(None),
    months: int = Query(6, ge=1, le=24),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return VisitStatsOut(**visit_stats(db, team_id=team_id, months=months))


@router.get("/visits/gallery/all", response_model=GalleryPageOut)
def get_gallery(
    team_id: Optional[int] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    recent: Optional[int] = Query(None, ge=1, le=3650),
    sort_by: str = Query("recent", pattern="^(recent|date|oldest)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    actor: Actor = Depends(get_actor),
):
    rows, total = gallery_media(
        db,
        team_id=team_id,
        start=start_date,
        end=end_date,
        recent_days=recent,
        now=clock.now(),
        oldest_first=sort_by == "oldest",
        limit=limit,
        offset=(page - 1) * limit,
    )
    items = [
        GalleryItemOut(
            **_to_media_out(media).model_dump(),
            visit_name=visit.name or "",
            team_id=visit.team_id,
            scheduled_date=as_aware_utc(visit.scheduled_date),
        )
        for media, visit in rows
    ]
    return GalleryPageOut(items=items, total=total, page=page, limit=limit)


@router.get("/visits/{visit_id}", response_model=VisitOut)
def get_visit_detail(
    visit_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    v = get_visit(db, visit_id)
    if not v:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    return _to_visit_out(db, v)


@router.get("/visits/{visit_id}/window", response_model=WindowOut)
def get_visit_window(
    visit_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    actor: Actor = Depends(get_actor),
):
    v = get_visit(db, visit_id)
    if not v:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    window = ensure_window(db, v)
    return WindowOut(
        visit_id=v.id,
        window_start=window.start,
        window_end=window.end,
        window_start_local=to_local(window.start),
        window_end_local=to_local(window.end),
        is_open=window.contains(clock.now()),
    )


@router.get("/visits/{visit_id}/gate", response_model=GateOut)
def check_visit_gate(
    visit_id: int,
    actor: Actor = Depends(get_actor),
    gate: ContributionGate = Depends(get_gate),
):
    decision = gate.check(actor, visit_id)
    if decision is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    if isinstance(decision, Deny):
        return GateOut(
            visit_id=visit_id,
            allowed=False,
            reason=decision.reason,
            message=decision.message,
            opens_at=decision.opens_at,
            closed_at=decision.closed_at,
        )
    return GateOut(visit_id=visit_id, allowed=True)


@router.post("/visits/{visit_id}/media", response_model=List[MediaOut])
def add_visit_media(
    visit_id: int,
    payload: MediaUpload,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: ContributionGate = Depends(get_gate),
):
    files = [MediaDescriptor(**item.model_dump()) for item in payload.files]
    try:
        rows = upload_media(db, gate, actor, visit_id, files)
    except GateDenied as exc:
        raise _gate_denied(exc)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if rows is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    return [_to_media_out(row) for row in rows]


@router.delete("/visits/{visit_id}/media/{media_id}")
def remove_visit_media(
    visit_id: int,
    media_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: ContributionGate = Depends(get_gate),
):
    try:
        removed = delete_media(db, gate, actor, visit_id, media_id)
    except GateDenied as exc:
        raise _gate_denied(exc)
    if removed is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found on visit")
    return {"ok": True}


@router.patch("/visits/{visit_id}", response_model=VisitOut)
def patch_visit(
    visit_id: int,
    payload: VisitUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: ContributionGate = Depends(get_gate),
):
    changes = payload.model_dump(exclude_unset=True)
    try:
        v = edit_visit(db, gate, actor, visit_id, changes)
    except GateDenied as exc:
        raise _gate_denied(exc)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not v:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    return _to_visit_out(db, v)


@router.put("/visits/{visit_id}/submit", response_model=VisitOut)
def submit_visit_report(
    visit_id: int,
    payload: ReportSubmit,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gate: ContributionGate = Depends(get_gate),
):
    try:
        v = submit_report(db, gate, actor, visit_id, payload.model_dump(exclude_none=True))
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except GateDenied as exc:
        raise _gate_denied(exc)
    if not v:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    return _to_visit_out(db, v)


@router.post("/visits/{visit_id}/cancel", response_model=VisitOut)
def cancel_scheduled_visit(
    visit_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    try:
        v = cancel_visit(db, actor, visit_id, now=clock.now())
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if not v:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    return _to_visit_out(db, v)


@router.get("/visits/{visit_id}/gallery", response_model=VisitGalleryOut)
def get_visit_gallery(
    visit_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    gallery = visit_gallery(db, visit_id)
    if gallery is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visit not found")
    v = gallery["visit"]
    return VisitGalleryOut(
        visit_id=v.id,
        name=v.name or "",
        scheduled_date=as_aware_utc(v.scheduled_date),
        photos=[_to_media_out(m) for m in gallery["photos"]],
        videos=[_to_media_out(m) for m in gallery["videos"]],
        docs=[_to_media_out(m) for m in gallery["docs"]],
    )


@router.get("/notifications", response_model=List[NotificationOut])
def get_my_notifications(
    unread: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return [_to_notification_out(n) for n in list_notifications(db, actor.id, unread_only=unread, limit=limit)]


@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def read_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = mark_read(db, actor.id, notification_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return _to_notification_out(row)
