from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from visitgate import models  # noqa: F401
from visitgate.authorization import Actor, TeamStoreAuthorizer
from visitgate.clock import LOCAL_TZ, FixedClock
from visitgate.contributions import cancel_visit, create_visit
from visitgate.db import Base
from visitgate.directory import create_team, create_user
from visitgate.errors import GateDenied
from visitgate.gate import Allow, ContributionGate, Deny
from visitgate.windows import compute_window


def make_session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test_gate.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


class CountingAuthorizer(TeamStoreAuthorizer):
    def __init__(self, db):
        super().__init__(db)
        self.member_lookups = 0

    def is_member(self, actor, team_id):
        self.member_lookups += 1
        return super().is_member(actor, team_id)


@pytest.fixture
def world(tmp_path):
    db = make_session(tmp_path)
    admin = create_user(db, "Admin", "admin@visits.local", role="admin")
    member = create_user(db, "Member", "member@visits.local")
    outsider = create_user(db, "Outsider", "outsider@visits.local")
    team = create_team(db, "Team North", leader_id=member.id)
    visit = create_visit(db, team.id, datetime(2024, 3, 10, tzinfo=LOCAL_TZ), name="School A")
    clock = FixedClock(datetime(2024, 3, 11, 0, 0, tzinfo=LOCAL_TZ))
    authorizer = CountingAuthorizer(db)
    world = {
        "db": db,
        "visit": visit,
        "clock": clock,
        "authorizer": authorizer,
        "gate": ContributionGate(db, authorizer, clock),
        "admin": Actor(admin.id, is_admin=True),
        "member": Actor(member.id),
        "outsider": Actor(outsider.id),
    }
    yield world
    db.close()


def test_member_scenario_across_window(world):
    gate, visit, member = world["gate"], world["visit"], world["member"]

    early = gate.can_mutate(member, visit, datetime(2024, 3, 10, 11, 59, tzinfo=LOCAL_TZ))
    assert isinstance(early, Deny)
    assert early.reason == "not-open-yet"
    assert early.opens_at == datetime(2024, 3, 10, 12, 0, tzinfo=LOCAL_TZ)
    assert early.opens_at.utcoffset() == timedelta(hours=5, minutes=30)
    assert "12:00 PM IST on 10 Mar 2024" in early.message

    inside = gate.can_mutate(member, visit, datetime(2024, 3, 11, 0, 0, tzinfo=LOCAL_TZ))
    assert isinstance(inside, Allow)

    late = gate.can_mutate(member, visit, datetime(2024, 3, 12, 12, 1, tzinfo=LOCAL_TZ))
    assert isinstance(late, Deny)
    assert late.reason == "closed"
    assert late.closed_at == datetime(2024, 3, 12, 12, 0, tzinfo=LOCAL_TZ)
    assert "12:00 PM IST on 12 Mar 2024" in late.message


def test_window_edges_are_open(world):
    gate, visit, member = world["gate"], world["visit"], world["member"]
    window = compute_window(visit.scheduled_date)
    assert isinstance(gate.can_mutate(member, visit, window.start), Allow)
    assert isinstance(gate.can_mutate(member, visit, window.end), Allow)
    assert gate.can_mutate(member, visit, window.end + timedelta(microseconds=1)).reason == "closed"


def test_uses_injected_clock_when_now_is_omitted(world):
    gate, visit, member, clock = world["gate"], world["visit"], world["member"], world["clock"]
    assert isinstance(gate.can_mutate(member, visit), Allow)
    clock.set(datetime(2024, 3, 13, 0, 0, tzinfo=LOCAL_TZ))
    assert gate.can_mutate(member, visit).reason == "closed"


def test_outsider_denied_but_admin_allowed_without_membership(world):
    gate, visit = world["gate"], world["visit"]
    denied = gate.can_mutate(world["outsider"], visit)
    assert isinstance(denied, Deny)
    assert denied.reason == "not-authorized"
    assert isinstance(gate.can_mutate(world["admin"], visit), Allow)


def test_time_checks_run_before_membership_lookup(world):
    gate, visit, authorizer = world["gate"], world["visit"], world["authorizer"]
    decision = gate.can_mutate(world["outsider"], visit, datetime(2024, 3, 9, tzinfo=LOCAL_TZ))
    assert decision.reason == "not-open-yet"
    assert authorizer.member_lookups == 0


def test_terminal_state_dominates_window_and_actor(world):
    db, gate = world["db"], world["gate"]
    visit = cancel_visit(db, world["admin"], world["visit"].id)
    for actor in (world["admin"], world["member"], world["outsider"]):
        for moment in (
            datetime(2024, 3, 9, tzinfo=LOCAL_TZ),
            datetime(2024, 3, 11, tzinfo=LOCAL_TZ),
            datetime(2024, 3, 20, tzinfo=LOCAL_TZ),
        ):
            decision = gate.can_mutate(actor, visit, moment)
            assert isinstance(decision, Deny)
            assert decision.reason == "terminal-state"
    assert world["authorizer"].member_lookups == 0


def test_missing_window_is_backfilled_on_first_evaluation(world):
    db, gate, visit = world["db"], world["gate"], world["visit"]
    visit.window_start_utc = None
    visit.window_end_utc = None
    db.commit()
    db.refresh(visit)

    gate.can_mutate(world["member"], visit)

    db.refresh(visit)
    expected_start, expected_end = compute_window(visit.scheduled_date).as_naive_utc()
    assert visit.window_start_utc == expected_start
    assert visit.window_end_utc == expected_end


def test_require_raises_with_structured_decision(world):
    gate, visit = world["gate"], world["visit"]
    with pytest.raises(GateDenied) as excinfo:
        gate.require(world["member"], visit, datetime(2024, 3, 14, tzinfo=LOCAL_TZ))
    assert excinfo.value.reason == "closed"
    detail = excinfo.value.decision.as_detail()
    assert detail["closed_at"] == "2024-03-12T12:00:00+05:30"
    assert detail["visit_id"] == visit.id


def test_check_by_id_returns_none_for_unknown_visit(world):
    assert world["gate"].check(world["member"], 99999) is None
    assert isinstance(world["gate"].check(world["member"], world["visit"].id), Allow)
