"""Append-only audit ledger.

Entries are written once and never updated or deleted here. Keyed entries
double as the idempotency index for bulk admin actions: the unique
constraint on (actor_id, action, idempotency_key) lets exactly one writer
record a given key.
"""

import json
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import IdempotencyConflict
from .models import AuditLog, utc_now_naive

logger = structlog.get_logger("visitgate.audit")


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload if payload is not None else {}, ensure_ascii=True, sort_keys=True)


def _json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except Exception:
        return fallback


def entry_metadata(row: AuditLog) -> dict:
    return _json_loads(row.metadata_json, {})


def append_audit_entry(
    db: Session,
    *,
    actor_id: int,
    action: str,
    target_type: str,
    target_id: str | int | None = None,
    metadata: dict | None = None,
    idempotency_key: str | None = None,
) -> AuditLog:
    key = (idempotency_key or "").strip() or None
    row = AuditLog(
        actor_id=int(actor_id),
        action=(action or "").strip(),
        target_type=(target_type or "").strip(),
        target_id=(str(target_id) if target_id is not None else None),
        idempotency_key=key,
        metadata_json=_json_dumps(metadata),
        created_at=utc_now_naive(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if key is None:
            raise
        logger.info("audit_idempotency_conflict", actor_id=actor_id, action=action)
        raise IdempotencyConflict(int(actor_id), action, key) from exc
    db.refresh(row)
    return row


def find_by_idempotency_key(
    db: Session,
    actor_id: int,
    action: str,
    idempotency_key: str,
) -> AuditLog | None:
    key = (idempotency_key or "").strip()
    if not key:
        return None
    return db.execute(
        select(AuditLog).where(
            AuditLog.actor_id == int(actor_id),
            AuditLog.action == (action or "").strip(),
            AuditLog.idempotency_key == key,
        )
    ).scalar_one_or_none()


def list_audit_logs(
    db: Session,
    limit: int = 200,
    action: str | None = None,
    actor_id: int | None = None,
    target_type: str | None = None,
    since_minutes: int | None = None,
) -> list[AuditLog]:
    q = db.query(AuditLog)
    if action:
        q = q.filter(AuditLog.action == action.strip())
    if actor_id is not None:
        q = q.filter(AuditLog.actor_id == int(actor_id))
    if target_type:
        q = q.filter(AuditLog.target_type == target_type.strip())
    if since_minutes is not None:
        cutoff = utc_now_naive() - timedelta(minutes=max(1, int(since_minutes)))
        q = q.filter(AuditLog.created_at >= cutoff)
    return (
        q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )
