import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from visitgate import bulk as bulk_module
from visitgate.audit import append_audit_entry, list_audit_logs
from visitgate.authorization import Actor
from visitgate.bulk import BulkMutationEngine, BulkRequest
from visitgate.db import Base
from visitgate.directory import create_team, create_user, get_members, get_user
from visitgate.models import AuditLog, TeamMember


def make_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test_bulk.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def setup(tmp_path):
    engine = make_engine(tmp_path)
    db = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    user_a = create_user(db, "Asha", "asha@visits.local", role="admin")
    user_b = create_user(db, "Bala", "bala@visits.local")
    leader = create_user(db, "Chitra", "chitra@visits.local")
    team = create_team(db, "Team East", leader_id=leader.id, member_ids=[user_b.id])
    yield {
        "engine": engine,
        "db": db,
        "a": user_a.id,
        "b": user_b.id,
        "leader": leader.id,
        "team": team.id,
        # Supplied by the identity layer; not a stored user.
        "root": Actor(id=9000, is_admin=True),
    }
    db.close()


def mutation_counter(engine):
    statements = []

    @event.listens_for(engine, "before_cursor_execute")
    def _capture(conn, cursor, statement, parameters, context, executemany):
        verb = statement.strip().split()[0].upper()
        if verb in {"INSERT", "UPDATE", "DELETE"}:
            statements.append(verb)

    return statements


def test_delete_sole_admin_and_volunteer(setup):
    db = setup["db"]
    outcome = BulkMutationEngine(db).execute(
        BulkRequest(action="delete", target_ids=[setup["a"], setup["b"]], actor=setup["root"])
    )

    assert outcome.results == [
        {"target_id": setup["a"], "outcome": "error", "reason": "last-admin"},
        {"target_id": setup["b"], "outcome": "ok"},
    ]
    assert outcome.matched == 2
    assert outcome.modified == 1
    assert outcome.idempotent is False
    assert get_user(db, setup["a"]) is not None
    assert get_user(db, setup["b"]) is None
    assert get_members(db, setup["team"]) == {setup["leader"]}


def test_sole_admin_delete_writes_nothing_for_that_item(setup):
    db = setup["db"]
    writes = mutation_counter(setup["engine"])
    outcome = BulkMutationEngine(db).execute(
        BulkRequest(action="delete", target_ids=[setup["a"]], actor=setup["root"])
    )
    assert outcome.results[0]["reason"] == "last-admin"
    # Only the audit entry is written.
    assert writes == ["INSERT"]


def test_delete_guards_self_team_leader_and_missing(setup):
    db = setup["db"]
    create_user(db, "Second Admin", "second@visits.local", role="admin")
    actor = Actor(id=setup["a"], is_admin=True)

    outcome = BulkMutationEngine(db).execute(
        BulkRequest(action="delete", target_ids=[setup["a"], setup["leader"], 424242], actor=actor)
    )
    assert [r["reason"] for r in outcome.results] == ["self", "team-leader", "not-found"]
    assert outcome.modified == 0
    assert get_user(db, setup["leader"]) is not None


def test_inactive_admin_is_not_the_last_admin(setup):
    db = setup["db"]
    stale = create_user(db, "Stale Admin", "stale@visits.local", role="admin")
    stale.is_active = False
    db.commit()
    stale_id = stale.id

    outcome = BulkMutationEngine(db).execute(
        BulkRequest(action="delete", target_ids=[stale_id], actor=setup["root"])
    )
    assert outcome.results == [{"target_id": stale_id, "outcome": "ok"}]
    assert get_user(db, stale_id) is None
    assert get_user(db, setup["a"]).role == "admin"


def test_duplicate_targets_are_processed_in_order(setup):
    outcome = BulkMutationEngine(setup["db"]).execute(
        BulkRequest(action="delete", target_ids=[setup["b"], setup["b"]], actor=setup["root"])
    )
    assert [r["outcome"] for r in outcome.results] == ["ok", "error"]
    assert outcome.results[1]["reason"] == "not-found"
    assert outcome.matched == 2
    assert outcome.modified == 1


def test_role_change_keeps_last_admin(setup):
    db = setup["db"]
    second = create_user(db, "Second Admin", "second@visits.local", role="admin")

    outcome = BulkMutationEngine(db).execute(
        BulkRequest(
            action="role-change",
            target_ids=[second.id, setup["a"], setup["b"]],
            actor=setup["root"],
            role="volunteer",
        )
    )
    assert outcome.results == [
        {"target_id": second.id, "outcome": "ok"},
        {"target_id": setup["a"], "outcome": "error", "reason": "last-admin"},
        {"target_id": setup["b"], "outcome": "ok"},
    ]
    assert get_user(db, second.id).role == "volunteer"
    assert get_user(db, setup["a"]).role == "admin"


def test_approve_and_reject_update_verification(setup):
    db = setup["db"]
    engine = BulkMutationEngine(db)
    approved = engine.execute(BulkRequest(action="approve", target_ids=[setup["b"]], actor=setup["root"]))
    assert approved.modified == 1
    assert get_user(db, setup["b"]).verification_status == "approved"

    rejected = engine.execute(
        BulkRequest(
            action="reject",
            target_ids=[setup["leader"], 777],
            actor=setup["root"],
            reason="Incomplete profile",
        )
    )
    assert rejected.results[1] == {"target_id": 777, "outcome": "error", "reason": "not-found"}
    leader = get_user(db, setup["leader"])
    assert leader.verification_status == "rejected"
    assert leader.verification_notes == "Incomplete profile"


def test_replay_with_same_key_returns_stored_results_without_writes(setup):
    db = setup["db"]
    request = BulkRequest(
        action="delete",
        target_ids=[setup["a"], setup["b"]],
        actor=setup["root"],
        idempotency_key="purge-2024-03",
    )
    first = BulkMutationEngine(db).execute(request)

    writes = mutation_counter(setup["engine"])
    second = BulkMutationEngine(db).execute(request)

    assert writes == []
    assert second.idempotent is True
    assert second.results == first.results
    assert (second.matched, second.modified) == (first.matched, first.modified)
    rows = db.execute(select(AuditLog).where(AuditLog.idempotency_key == "purge-2024-03")).scalars().all()
    assert len(rows) == 1


def test_key_is_scoped_to_actor_and_action(setup):
    db = setup["db"]
    engine = BulkMutationEngine(db)
    engine.execute(BulkRequest(action="approve", target_ids=[setup["b"]], actor=setup["root"], idempotency_key="k1"))

    other_action = engine.execute(
        BulkRequest(action="reject", target_ids=[setup["b"]], actor=setup["root"], idempotency_key="k1")
    )
    assert other_action.idempotent is False

    other_actor = engine.execute(
        BulkRequest(
            action="approve",
            target_ids=[setup["b"]],
            actor=Actor(id=setup["a"], is_admin=True),
            idempotency_key="k1",
        )
    )
    assert other_actor.idempotent is False
    assert len(list_audit_logs(db)) == 3


def test_store_failure_on_one_item_does_not_stop_batch(setup):
    db = setup["db"]
    engine = BulkMutationEngine(db)
    original = engine._handlers["approve"]

    def flaky(request, target_id):
        if target_id == setup["b"]:
            raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))
        original(request, target_id)

    engine._handlers["approve"] = flaky
    outcome = engine.execute(
        BulkRequest(action="approve", target_ids=[setup["a"], setup["b"], setup["leader"]], actor=setup["root"])
    )
    assert [r["outcome"] for r in outcome.results] == ["ok", "error", "ok"]
    assert outcome.results[1]["reason"] == "error"
    assert get_user(db, setup["leader"]).verification_status == "approved"
    assert get_user(db, setup["b"]).verification_status == "pending"


def test_concurrent_writer_with_same_key_wins(setup, monkeypatch):
    db = setup["db"]
    winner_results = [{"target_id": setup["b"], "outcome": "ok"}]
    append_audit_entry(
        db,
        actor_id=setup["root"].id,
        action="user.bulk.approve",
        target_type="User",
        metadata={"matched": 1, "modified": 1, "results": winner_results, "idempotency_key": "race"},
        idempotency_key="race",
    )

    real_lookup = bulk_module.find_by_idempotency_key
    calls = {"n": 0}

    def lookup_misses_once(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_lookup(*args, **kwargs)

    monkeypatch.setattr(bulk_module, "find_by_idempotency_key", lookup_misses_once)
    outcome = BulkMutationEngine(db).execute(
        BulkRequest(
            action="approve",
            target_ids=[setup["b"], setup["leader"]],
            actor=setup["root"],
            idempotency_key="race",
        )
    )

    assert outcome.idempotent is True
    assert outcome.results == winner_results
    rows = db.execute(select(AuditLog).where(AuditLog.idempotency_key == "race")).scalars().all()
    assert len(rows) == 1


def test_request_validation(setup):
    engine = BulkMutationEngine(setup["db"])
    with pytest.raises(PermissionError):
        engine.execute(BulkRequest(action="approve", target_ids=[setup["b"]], actor=Actor(id=setup["b"])))
    with pytest.raises(ValueError):
        engine.execute(BulkRequest(action="promote", target_ids=[setup["b"]], actor=setup["root"]))
    with pytest.raises(ValueError):
        engine.execute(BulkRequest(action="role-change", target_ids=[setup["b"]], actor=setup["root"]))
    with pytest.raises(ValueError):
        engine.execute(BulkRequest(action="approve", target_ids=[], actor=setup["root"]))


def test_audit_entry_records_batch(setup):
    db = setup["db"]
    BulkMutationEngine(db).execute(
        BulkRequest(action="delete", target_ids=[setup["b"]], actor=setup["root"], idempotency_key="one")
    )
    rows = list_audit_logs(db, action="user.bulk.delete")
    assert len(rows) == 1
    assert rows[0].actor_id == setup["root"].id
    assert rows[0].target_type == "User"
    assert db.execute(select(TeamMember).where(TeamMember.user_id == setup["b"])).first() is None
