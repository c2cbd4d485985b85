from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from .audit import entry_metadata, list_audit_logs
from .authorization import Actor
from .api import require_admin
from .bulk import BulkMutationEngine, BulkRequest
from .db import get_db
from .directory import (
    add_team_member,
    create_team,
    create_user,
    get_members,
    get_team,
    list_users,
)
from .errors import StoreUnavailable
from .models import Team, User
from .observability import get_ops_metrics_snapshot
from .schemas import (
    AuditLogOut,
    BulkActionCreate,
    BulkActionOut,
    TeamCreate,
    TeamMemberAdd,
    TeamOut,
    UserCreate,
    UserOut,
)

router = APIRouter(prefix="/api/admin")


def _to_user_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        name=u.name,
        email=u.email,
        role=u.role,
        verification_status=u.verification_status,
        verification_notes=u.verification_notes,
        is_active=bool(u.is_active),
    )


def _to_team_out(db: Session, t: Team) -> TeamOut:
    return TeamOut(
        id=t.id,
        name=t.name,
        leader_id=t.leader_id,
        member_ids=sorted(get_members(db, t.id)),
        is_active=bool(t.is_active),
    )


@router.post("/users", response_model=UserOut)
def add_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    try:
        u = create_user(
            db,
            name=payload.name,
            email=payload.email,
            role=payload.role,
            verification_status=payload.verification_status,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_user_out(u)


@router.get("/users", response_model=List[UserOut])
def get_users(
    role: Optional[str] = Query(None, pattern="^(admin|volunteer)$"),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return [_to_user_out(u) for u in list_users(db, role=role, limit=limit)]


@router.post("/users/bulk", response_model=BulkActionOut)
def bulk_user_action(
    payload: BulkActionCreate,
    idempotency_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    request = BulkRequest(
        action=payload.action,
        target_ids=list(payload.target_ids),
        actor=actor,
        idempotency_key=payload.idempotency_key or idempotency_key,
        role=payload.role,
        reason=payload.reason,
    )
    try:
        outcome = BulkMutationEngine(db).execute(request)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return BulkActionOut(
        matched=outcome.matched,
        modified=outcome.modified,
        results=outcome.results,
        idempotent=outcome.idempotent,
    )


@router.post("/teams", response_model=TeamOut)
def add_team(
    payload: TeamCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    try:
        t = create_team(db, name=payload.name, leader_id=payload.leader_id, member_ids=payload.member_ids)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_team_out(db, t)


@router.post("/teams/{team_id}/members", response_model=TeamOut)
def add_member(
    team_id: int,
    payload: TeamMemberAdd,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    row = add_team_member(db, team_id, payload.user_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team or user not found")
    return _to_team_out(db, get_team(db, team_id))


@router.get("/audit-logs", response_model=List[AuditLogOut])
def get_audit_logs(
    action: Optional[str] = Query(None),
    actor_id: Optional[int] = Query(None),
    since_minutes: Optional[int] = Query(None, ge=1),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    rows = list_audit_logs(db, limit=limit, action=action, actor_id=actor_id, since_minutes=since_minutes)
    return [
        AuditLogOut(
            id=row.id,
            actor_id=row.actor_id,
            action=row.action,
            target_type=row.target_type,
            target_id=row.target_id,
            idempotency_key=row.idempotency_key,
            metadata=entry_metadata(row),
            created_at=row.created_at,
        )
        for row in rows
    ]


@router.get("/ops/metrics")
def ops_metrics(
    window_minutes: int = Query(15, ge=1, le=1440),
    actor: Actor = Depends(require_admin),
):
    return get_ops_metrics_snapshot(window_minutes=window_minutes)
