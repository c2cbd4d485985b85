"""Batch admin actions over users with per-item isolation and replay by idempotency key.

Every target gets its own transaction. A rejected or failed item is rolled
back on its own and recorded in the results; items before and after it are
unaffected. One audit entry per batch stores the full results, and a later
call with the same (actor, action, idempotency key) returns those stored
results without touching the store again.
"""

from dataclasses import dataclass, field
from typing import Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .audit import append_audit_entry, entry_metadata, find_by_idempotency_key
from .authorization import Actor
from .config import settings
from .directory import count_admins, detach_memberships, get_user, teams_led_by
from .errors import IdempotencyConflict, ItemRejected, StoreUnavailable
from .models import ROLE_ADMIN, USER_ROLES, utc_now_naive
from .notifications import delete_for_user

logger = structlog.get_logger("visitgate.bulk")

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_ROLE_CHANGE = "role-change"
ACTION_DELETE = "delete"
BULK_ACTIONS = (ACTION_APPROVE, ACTION_REJECT, ACTION_ROLE_CHANGE, ACTION_DELETE)

AUDIT_ACTIONS = {
    ACTION_APPROVE: "user.bulk.approve",
    ACTION_REJECT: "user.bulk.reject",
    ACTION_ROLE_CHANGE: "user.bulk.role_change",
    ACTION_DELETE: "user.bulk.delete",
}

OUTCOME_OK = "ok"
OUTCOME_ERROR = "error"

REJECT_NOT_FOUND = "not-found"
REJECT_LAST_ADMIN = "last-admin"
REJECT_TEAM_LEADER = "team-leader"
REJECT_SELF = "self"
REJECT_ERROR = "error"
REJECT_REASONS = (REJECT_NOT_FOUND, REJECT_LAST_ADMIN, REJECT_TEAM_LEADER, REJECT_SELF, REJECT_ERROR)


@dataclass
class BulkRequest:
    action: str
    target_ids: list[int]
    actor: Actor
    idempotency_key: str | None = None
    role: str | None = None
    reason: str | None = None


@dataclass
class BulkOutcome:
    matched: int
    modified: int
    results: list[dict] = field(default_factory=list)
    idempotent: bool = False


def _ok(target_id: int) -> dict:
    return {"target_id": target_id, "outcome": OUTCOME_OK}


def _rejected(target_id: int, reason: str) -> dict:
    return {"target_id": target_id, "outcome": OUTCOME_ERROR, "reason": reason}


class BulkMutationEngine:
    def __init__(self, db: Session):
        self.db = db
        self._handlers: dict[str, Callable[[BulkRequest, int], None]] = {
            ACTION_APPROVE: self._approve,
            ACTION_REJECT: self._reject,
            ACTION_ROLE_CHANGE: self._change_role,
            ACTION_DELETE: self._delete,
        }

    def execute(self, request: BulkRequest) -> BulkOutcome:
        self._validate(request)
        audit_action = AUDIT_ACTIONS[request.action]
        key = (request.idempotency_key or "").strip() or None

        if key:
            prior = self._lookup(request.actor.id, audit_action, key)
            if prior is not None:
                logger.info("bulk_replayed", action=request.action, actor_id=request.actor.id)
                return prior

        handler = self._handlers[request.action]
        results = [self._apply_item(handler, request, int(target_id)) for target_id in request.target_ids]
        modified = sum(1 for item in results if item["outcome"] == OUTCOME_OK)
        outcome = BulkOutcome(matched=len(request.target_ids), modified=modified, results=results)

        metadata = {
            "matched": outcome.matched,
            "modified": outcome.modified,
            "results": results,
        }
        if key:
            metadata["idempotency_key"] = key
        if request.role:
            metadata["role"] = request.role
        if request.reason:
            metadata["reason"] = request.reason

        try:
            append_audit_entry(
                self.db,
                actor_id=request.actor.id,
                action=audit_action,
                target_type="User",
                metadata=metadata,
                idempotency_key=key,
            )
        except IdempotencyConflict:
            # A concurrent call with the same key recorded first; its results win.
            prior = self._lookup(request.actor.id, audit_action, key)
            if prior is None:
                raise
            logger.warning("bulk_idempotency_race", action=request.action, actor_id=request.actor.id)
            return prior
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreUnavailable("audit store unavailable") from exc

        logger.info(
            "bulk_executed",
            action=request.action,
            actor_id=request.actor.id,
            matched=outcome.matched,
            modified=outcome.modified,
        )
        return outcome

    def _validate(self, request: BulkRequest) -> None:
        if not request.actor.is_admin:
            raise PermissionError("Only admins can run bulk actions")
        if request.action not in BULK_ACTIONS:
            raise ValueError(f"action must be one of {'|'.join(BULK_ACTIONS)}")
        if not request.target_ids:
            raise ValueError("target_ids must be a non-empty list")
        if len(request.target_ids) > int(settings.BULK_MAX_TARGETS):
            raise ValueError(f"at most {settings.BULK_MAX_TARGETS} targets per request")
        if request.action == ACTION_ROLE_CHANGE and (request.role or "").strip().lower() not in USER_ROLES:
            raise ValueError("role must be admin or volunteer for role-change")
        key = request.idempotency_key or ""
        if len(key) > int(settings.IDEMPOTENCY_KEY_MAX_LENGTH):
            raise ValueError("idempotency_key too long")

    def _lookup(self, actor_id: int, audit_action: str, key: str) -> BulkOutcome | None:
        try:
            row = find_by_idempotency_key(self.db, actor_id, audit_action, key)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreUnavailable("audit store unavailable") from exc
        if row is None:
            return None
        meta = entry_metadata(row)
        results = list(meta.get("results") or [])
        return BulkOutcome(
            matched=int(meta.get("matched", len(results))),
            modified=int(meta.get("modified", 0)),
            results=results,
            idempotent=True,
        )

    def _apply_item(self, handler: Callable[[BulkRequest, int], None], request: BulkRequest, target_id: int) -> dict:
        try:
            handler(request, target_id)
            self.db.commit()
        except ItemRejected as exc:
            self.db.rollback()
            logger.info("bulk_item_rejected", action=request.action, target_id=target_id, reason=exc.reason)
            return _rejected(target_id, exc.reason)
        except (SQLAlchemyError, StoreUnavailable) as exc:
            self.db.rollback()
            logger.warning("bulk_item_failed", action=request.action, target_id=target_id, exc_info=exc)
            return _rejected(target_id, REJECT_ERROR)
        return _ok(target_id)

    def _load_user(self, target_id: int):
        user = get_user(self.db, target_id)
        if user is None:
            raise ItemRejected(REJECT_NOT_FOUND)
        return user

    def _is_sole_admin(self, user) -> bool:
        # Inactive admins do not count toward the active total, so they never hold the last seat.
        return bool(user.is_active) and user.role == ROLE_ADMIN and count_admins(self.db) <= 1

    def _approve(self, request: BulkRequest, target_id: int) -> None:
        user = self._load_user(target_id)
        user.verification_status = "approved"
        user.is_active = True
        user.updated_at = utc_now_naive()

    def _reject(self, request: BulkRequest, target_id: int) -> None:
        user = self._load_user(target_id)
        user.verification_status = "rejected"
        if request.reason:
            user.verification_notes = request.reason.strip()[:500]
        user.updated_at = utc_now_naive()

    def _change_role(self, request: BulkRequest, target_id: int) -> None:
        user = self._load_user(target_id)
        new_role = (request.role or "").strip().lower()
        if new_role != ROLE_ADMIN and self._is_sole_admin(user):
            raise ItemRejected(REJECT_LAST_ADMIN)
        user.role = new_role
        user.updated_at = utc_now_naive()

    def _delete(self, request: BulkRequest, target_id: int) -> None:
        user = self._load_user(target_id)
        if user.id == request.actor.id:
            raise ItemRejected(REJECT_SELF)
        if self._is_sole_admin(user):
            raise ItemRejected(REJECT_LAST_ADMIN)
        if teams_led_by(self.db, user.id):
            raise ItemRejected(REJECT_TEAM_LEADER)
        detach_memberships(self.db, user.id)
        delete_for_user(self.db, user.id)
        self.db.delete(user)
