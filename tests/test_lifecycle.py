import json
from datetime import datetime

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from visitgate import models  # noqa: F401
from visitgate.authorization import Actor, TeamStoreAuthorizer
from visitgate.clock import LOCAL_TZ, FixedClock
from visitgate.contributions import create_visit
from visitgate.db import Base
from visitgate.directory import create_team, create_user
from visitgate.errors import GateDenied, InvalidTransition
from visitgate.gate import ContributionGate
from visitgate.lifecycle import ensure_window, transition_to_cancelled, transition_to_completed
from visitgate.models import Visit
from visitgate.windows import compute_window


def make_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test_lifecycle.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def setup(tmp_path):
    engine = make_engine(tmp_path)
    session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    db = session_local()
    admin = create_user(db, "Admin", "admin@visits.local", role="admin")
    member = create_user(db, "Member", "member@visits.local")
    team = create_team(db, "Team South", leader_id=member.id)
    visit = create_visit(db, team.id, datetime(2024, 3, 10, tzinfo=LOCAL_TZ))
    clock = FixedClock(datetime(2024, 3, 11, 9, 0, tzinfo=LOCAL_TZ))
    yield {
        "engine": engine,
        "session_local": session_local,
        "db": db,
        "visit": visit,
        "team": team,
        "clock": clock,
        "gate": ContributionGate(db, TeamStoreAuthorizer(db), clock),
        "admin": Actor(admin.id, is_admin=True),
        "member": Actor(member.id),
    }
    db.close()


def test_ensure_window_is_noop_when_present(setup):
    db, visit, engine = setup["db"], setup["visit"], setup["engine"]
    statements = []

    @event.listens_for(engine, "before_cursor_execute")
    def _capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.strip().split()[0].upper())

    window = ensure_window(db, visit)
    assert window == compute_window(visit.scheduled_date)
    assert "UPDATE" not in statements


def test_ensure_window_backfills_legacy_row(setup):
    db, team = setup["db"], setup["team"]
    legacy = Visit(name="Legacy", scheduled_date=datetime(2023, 12, 31, 20, 0), team_id=team.id)
    db.add(legacy)
    db.commit()
    db.refresh(legacy)
    assert legacy.window_start_utc is None

    window = ensure_window(db, legacy)

    assert window.start_local == datetime(2024, 1, 1, 12, 0, tzinfo=LOCAL_TZ)
    other = setup["session_local"]()
    try:
        stored = other.get(Visit, legacy.id)
        assert (stored.window_start_utc, stored.window_end_utc) == window.as_naive_utc()
    finally:
        other.close()


def test_complete_inside_window_stores_report(setup):
    db, visit = setup["db"], setup["visit"]
    done = transition_to_completed(
        db,
        visit,
        {"children_count": 28, "topics_covered": ["hygiene"]},
        actor=setup["member"],
        gate=setup["gate"],
    )
    assert done.status == "completed"
    assert done.submitted_by == setup["member"].id
    assert done.submission_date == datetime(2024, 3, 11, 3, 30)
    assert json.loads(done.report_json) == {"children_count": 28, "topics_covered": ["hygiene"]}


def test_complete_outside_window_is_gate_denied_and_keeps_status(setup):
    db, visit, clock = setup["db"], setup["visit"], setup["clock"]
    clock.set(datetime(2024, 3, 15, tzinfo=LOCAL_TZ))
    with pytest.raises(GateDenied) as excinfo:
        transition_to_completed(db, visit, {}, actor=setup["member"], gate=setup["gate"])
    assert excinfo.value.reason == "closed"
    db.refresh(visit)
    assert visit.status == "scheduled"


def test_terminal_visit_raises_invalid_transition_not_gate_error(setup):
    db, visit = setup["db"], setup["visit"]
    transition_to_completed(db, visit, {}, actor=setup["member"], gate=setup["gate"])

    with pytest.raises(InvalidTransition) as excinfo:
        transition_to_completed(db, visit, {}, actor=setup["member"], gate=setup["gate"])
    assert excinfo.value.from_status == "completed"

    with pytest.raises(InvalidTransition):
        transition_to_cancelled(db, visit, actor=setup["admin"])


def test_cancel_ignores_window_and_is_final(setup):
    db, visit, clock = setup["db"], setup["visit"], setup["clock"]
    clock.set(datetime(2025, 1, 1, tzinfo=LOCAL_TZ))
    cancelled = transition_to_cancelled(db, visit, actor=setup["admin"], now=clock.now())
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_by == setup["admin"].id

    with pytest.raises(InvalidTransition):
        transition_to_cancelled(db, visit, actor=setup["admin"])
    with pytest.raises(InvalidTransition):
        transition_to_completed(db, visit, {}, actor=setup["member"], gate=setup["gate"])


def test_completion_loses_to_concurrent_cancel(setup):
    visit_id = setup["visit"].id
    stale_factory = sessionmaker(bind=setup["engine"], autoflush=False, autocommit=False, expire_on_commit=False)
    stale_db = stale_factory()
    canceller = setup["session_local"]()
    try:
        stale_visit = stale_db.get(Visit, visit_id)
        stale_db.commit()

        transition_to_cancelled(canceller, canceller.get(Visit, visit_id), actor=setup["admin"])

        assert stale_visit.status == "scheduled"
        gate = ContributionGate(stale_db, TeamStoreAuthorizer(stale_db), setup["clock"])
        with pytest.raises(InvalidTransition) as excinfo:
            transition_to_completed(stale_db, stale_visit, {}, actor=setup["member"], gate=gate)
        assert excinfo.value.from_status == "cancelled"
        assert stale_visit.status == "cancelled"
    finally:
        stale_db.close()
        canceller.close()


def test_concurrent_backfill_lands_one_write_with_identical_bounds(setup):
    db, team, engine = setup["db"], setup["team"], setup["engine"]
    legacy = Visit(name="Legacy", scheduled_date=datetime(2024, 5, 1, 2, 0), team_id=team.id)
    db.add(legacy)
    db.commit()

    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    first_db, second_db = factory(), factory()
    updated_rows = []

    @event.listens_for(engine, "after_cursor_execute")
    def _capture(conn, cursor, statement, parameters, context, executemany):
        if statement.strip().upper().startswith("UPDATE VISITS"):
            updated_rows.append(cursor.rowcount)

    try:
        first_visit = first_db.get(Visit, legacy.id)
        second_visit = second_db.get(Visit, legacy.id)
        first_db.commit()
        second_db.commit()
        assert first_visit.window_start_utc is None and second_visit.window_start_utc is None

        first_window = ensure_window(first_db, first_visit)
        second_window = ensure_window(second_db, second_visit)

        assert first_window == second_window
        assert updated_rows == [1, 0]
        assert (second_visit.window_start_utc, second_visit.window_end_utc) == first_window.as_naive_utc()
    finally:
        event.remove(engine, "after_cursor_execute", _capture)
        first_db.close()
        second_db.close()
