from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

VISIT_SCHEDULED = "scheduled"
VISIT_COMPLETED = "completed"
VISIT_CANCELLED = "cancelled"
VISIT_STATUSES = {VISIT_SCHEDULED, VISIT_COMPLETED, VISIT_CANCELLED}
TERMINAL_VISIT_STATUSES = {VISIT_COMPLETED, VISIT_CANCELLED}

ROLE_ADMIN = "admin"
ROLE_VOLUNTEER = "volunteer"
USER_ROLES = {ROLE_ADMIN, ROLE_VOLUNTEER}

MEDIA_KINDS = ("photos", "videos", "docs")
GALLERY_MEDIA_KINDS = ("photos", "videos")

NOTIFICATION_TYPES = {"visit", "team", "system"}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default=ROLE_VOLUNTEER, index=True)
    verification_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    verification_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    leader_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    leader = relationship("User")


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Visit(Base):
    __tablename__ = "visits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    scheduled_date: Mapped[datetime] = mapped_column(DateTime, index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), index=True)
    assigned_class: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=VISIT_SCHEDULED, index=True)
    window_start_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    window_end_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    report_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    submission_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    window_open_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    window_closing_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    window_closed_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    team = relationship("Team")
    media = relationship(
        "VisitMedia",
        order_by="VisitMedia.id",
        cascade="all, delete-orphan",
    )


class VisitMedia(Base):
    __tablename__ = "visit_media"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    visit_id: Mapped[int] = mapped_column(ForeignKey("visits.id"), index=True)
    kind: Mapped[str] = mapped_column(String(20), index=True)
    filename: Mapped[str] = mapped_column(String(255))
    original_name: Mapped[str] = mapped_column(String(255))
    path: Mapped[str] = mapped_column(String(500))
    size: Mapped[int] = mapped_column(Integer, default=0)
    mimetype: Mapped[str] = mapped_column(String(120))
    uploaded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    # NULL keys never collide, so only keyed entries are deduplicated.
    __table_args__ = (
        UniqueConstraint(
            "actor_id",
            "action",
            "idempotency_key",
            name="uq_audit_logs_actor_action_idempotency",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    actor_id: Mapped[int] = mapped_column(Integer, index=True)
    action: Mapped[str] = mapped_column(String(80), index=True)
    target_type: Mapped[str] = mapped_column(String(40))
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(String(1000))
    type: Mapped[str] = mapped_column(String(20), default="system")
    link: Mapped[str | None] = mapped_column(String(300), nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, default="{}")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
