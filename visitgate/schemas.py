from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, validator


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=200)
    role: str = Field(default="volunteer", pattern="^(admin|volunteer)$")
    verification_status: str = Field(default="pending", pattern="^(pending|approved|rejected)$")


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: str
    verification_status: str
    verification_notes: str | None = None
    is_active: bool


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    leader_id: int = Field(gt=0)
    member_ids: list[int] = Field(default_factory=list)


class TeamMemberAdd(BaseModel):
    user_id: int = Field(gt=0)


class TeamOut(BaseModel):
    id: int
    name: str
    leader_id: int
    member_ids: list[int]
    is_active: bool


class VisitCreate(BaseModel):
    team_id: int = Field(gt=0)
    scheduled_date: datetime
    name: str = Field(default="", max_length=200)
    assigned_class: str | None = Field(default=None, max_length=120)


class VisitUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    assigned_class: str | None = Field(default=None, max_length=120)

    @validator("name")
    @classmethod
    def name_not_null(cls, value: str | None):
        if value is None or not value.strip():
            raise ValueError("name cannot be empty")
        return value.strip()


class MediaIn(BaseModel):
    kind: str = Field(pattern="^(photos|videos|docs)$")
    filename: str = Field(min_length=1, max_length=255)
    original_name: str = Field(min_length=1, max_length=255)
    path: str = Field(min_length=1, max_length=500)
    size: int = Field(ge=0)
    mimetype: str = Field(min_length=1, max_length=120)


class MediaUpload(BaseModel):
    files: list[MediaIn] = Field(min_length=1)


class MediaOut(BaseModel):
    id: int
    visit_id: int
    kind: str
    filename: str
    original_name: str
    path: str
    size: int
    mimetype: str
    uploaded_by: int | None = None
    uploaded_at: datetime


class ReportSubmit(BaseModel):
    topics_covered: list[str] = Field(default_factory=list)
    teaching_methods: list[str] = Field(default_factory=list)
    children_count: int | None = Field(default=None, ge=0)
    children_response: str | None = Field(default=None, pattern="^(excellent|good|average|poor)$")
    challenges_faced: str | None = Field(default=None, max_length=2000)
    suggestions: str | None = Field(default=None, max_length=2000)
    classes_visited: int | None = Field(default=None, ge=0)
    total_classes: int | None = Field(default=None, ge=0)

    @validator("topics_covered", "teaching_methods", pre=True)
    @classmethod
    def split_comma_separated(cls, value: Any):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class WindowOut(BaseModel):
    visit_id: int
    window_start: datetime
    window_end: datetime
    window_start_local: datetime
    window_end_local: datetime
    is_open: bool


class VisitOut(BaseModel):
    id: int
    name: str
    team_id: int
    assigned_class: str | None = None
    scheduled_date: datetime
    status: str
    window_start: datetime | None = None
    window_end: datetime | None = None
    report: dict = Field(default_factory=dict)
    submitted_by: int | None = None
    submission_date: datetime | None = None
    media: list[MediaOut] = Field(default_factory=list)


class GateOut(BaseModel):
    visit_id: int
    allowed: bool
    reason: str | None = None
    message: str | None = None
    opens_at: datetime | None = None
    closed_at: datetime | None = None


class BulkActionCreate(BaseModel):
    action: str = Field(pattern="^(approve|reject|role-change|delete)$")
    target_ids: list[int] = Field(min_length=1)
    role: str | None = Field(default=None, pattern="^(admin|volunteer)$")
    reason: str | None = Field(default=None, max_length=500)
    idempotency_key: str | None = Field(default=None, max_length=200)


class BulkItemResult(BaseModel):
    target_id: int
    outcome: str
    reason: str | None = None


class BulkActionOut(BaseModel):
    matched: int
    modified: int
    results: list[BulkItemResult]
    idempotent: bool = False


class AuditLogOut(BaseModel):
    id: int
    actor_id: int
    action: str
    target_type: str
    target_id: str | None = None
    idempotency_key: str | None = None
    metadata: dict
    created_at: datetime


class TeamVisitCount(BaseModel):
    team_id: int
    visits: int


class MonthlyVisitStats(BaseModel):
    year: int
    month: int
    visits: int
    completed_visits: int
    children: int


class VisitStatsOut(BaseModel):
    total_visits: int
    by_status: dict[str, int]
    by_team: list[TeamVisitCount]
    total_children: int
    average_children: float
    monthly: list[MonthlyVisitStats]


class VisitGalleryOut(BaseModel):
    visit_id: int
    name: str
    scheduled_date: datetime
    photos: list[MediaOut] = Field(default_factory=list)
    videos: list[MediaOut] = Field(default_factory=list)
    docs: list[MediaOut] = Field(default_factory=list)


class GalleryItemOut(MediaOut):
    visit_name: str
    team_id: int
    scheduled_date: datetime


class GalleryPageOut(BaseModel):
    items: list[GalleryItemOut]
    total: int
    page: int
    limit: int


class NotificationOut(BaseModel):
    id: int
    title: str
    message: str
    type: str
    link: str | None = None
    meta: dict
    is_read: bool
    created_at: datetime
