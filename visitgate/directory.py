from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    ROLE_ADMIN,
    ROLE_VOLUNTEER,
    USER_ROLES,
    Team,
    TeamMember,
    User,
    utc_now_naive,
)


def _normalize_email(value: str | None) -> str | None:
    raw = (value or "").strip().lower()
    return raw or None


def _normalize_role(value: str | None) -> str | None:
    raw = (value or "").strip().lower()
    if raw in USER_ROLES:
        return raw
    return None


def create_user(
    db: Session,
    name: str,
    email: str,
    role: str = ROLE_VOLUNTEER,
    verification_status: str = "pending",
) -> User:
    normalized_email = _normalize_email(email)
    normalized_role = _normalize_role(role)
    if not normalized_email:
        raise ValueError("email is required")
    if not normalized_role:
        raise ValueError("Invalid role")

    row = User(
        name=(name or "").strip(),
        email=normalized_email,
        role=normalized_role,
        verification_status=verification_status,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("User with this email already exists") from exc
    db.refresh(row)
    return row


def get_user(db: Session, user_id: int) -> User | None:
    return db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()


def list_users(db: Session, role: str | None = None, limit: int = 200) -> list[User]:
    q = db.query(User)
    if role:
        q = q.filter(User.role == role.strip().lower())
    return q.order_by(User.id.asc()).limit(max(1, min(int(limit), 1000))).all()


def count_admins(db: Session) -> int:
    return int(
        db.execute(
            select(func.count(User.id)).where(User.role == ROLE_ADMIN, User.is_active.is_(True))
        ).scalar_one()
        or 0
    )


def create_team(
    db: Session,
    name: str,
    leader_id: int,
    member_ids: list[int] | None = None,
) -> Team:
    team_name = (name or "").strip()
    if not team_name:
        raise ValueError("name is required")
    if get_user(db, leader_id) is None:
        raise ValueError("Team leader not found")

    team = Team(name=team_name, leader_id=leader_id, created_at=utc_now_naive())
    db.add(team)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Team name already exists") from exc

    wanted = [leader_id] + [int(x) for x in (member_ids or []) if int(x) != leader_id]
    for user_id in dict.fromkeys(wanted):
        if get_user(db, user_id) is None:
            db.rollback()
            raise ValueError(f"User {user_id} not found")
        db.add(TeamMember(team_id=team.id, user_id=user_id, created_at=utc_now_naive()))
    db.commit()
    db.refresh(team)
    return team


def get_team(db: Session, team_id: int) -> Team | None:
    return db.execute(select(Team).where(Team.id == team_id)).scalar_one_or_none()


def add_team_member(db: Session, team_id: int, user_id: int) -> TeamMember | None:
    if get_team(db, team_id) is None or get_user(db, user_id) is None:
        return None
    existing = db.execute(
        select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
    ).scalar_one_or_none()
    if existing:
        return existing

    row = TeamMember(team_id=team_id, user_id=user_id, created_at=utc_now_naive())
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Another request added the same membership first.
        db.rollback()
        return db.execute(
            select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        ).scalar_one()
    db.refresh(row)
    return row


def get_members(db: Session, team_id: int) -> set[int]:
    rows = db.execute(select(TeamMember.user_id).where(TeamMember.team_id == team_id)).scalars().all()
    return {int(x) for x in rows}


def is_team_member(db: Session, team_id: int, user_id: int) -> bool:
    row = db.execute(
        select(TeamMember.id).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
    ).first()
    return row is not None


def teams_led_by(db: Session, user_id: int) -> list[Team]:
    return (
        db.query(Team)
        .filter(Team.leader_id == user_id, Team.is_active.is_(True))
        .order_by(Team.id.asc())
        .all()
    )


def detach_memberships(db: Session, user_id: int) -> int:
    result = db.execute(delete(TeamMember).where(TeamMember.user_id == user_id))
    return int(result.rowcount or 0)
