"""Snapshot load and export."""

import pytest
from pydantic import ValidationError as SchemaError

from config import Settings
from conftest import (
    ACACIA,
    BAYVIEW,
    DANIEL,
    EMILY,
    JESSICA,
    MICHAEL,
    OLIVER,
    SARAH,
    base_snapshot,
    days,
    remaining,
)
from engine import BTOEngine
from errors import DuplicateKeyError, ValidationError
from infrastructure import InMemoryDatabase
from model import Decision
from snapshot import EngineSnapshot, read_snapshot, write_snapshot


def load(data, **settings):
    engine = BTOEngine(InMemoryDatabase(), Settings(_env_file=None, **settings))
    engine.load_snapshot(EngineSnapshot.model_validate(data))
    return engine


def test_manager_assignments_are_derived(engine):
    michael = engine.find_user(MICHAEL)
    assert michael.assigned_project == ACACIA
    assert michael.managed_projects == [ACACIA]
    # Nothing open yet, so the upcoming project is assigned.
    assert engine.find_user(JESSICA).assigned_project == BAYVIEW
    assert engine.find_user(OLIVER).assigned_project is None


def test_officer_roster_becomes_approved_registrations():
    data = base_snapshot()
    data["projects"][0]["officers"] = ["Daniel", EMILY.lower(), "Nobody"]
    engine = load(data)

    project = engine.get_project(ACACIA)
    assert project.officers == ["Daniel", "Emily"]
    assert project.current_officer_slots == 2
    for nric in (DANIEL, EMILY):
        assert engine.registration_status(nric, ACACIA).status == "approved"
        assert engine.find_user(nric).assigned_project == ACACIA


def test_closed_projects_are_hidden_on_load():
    data = base_snapshot()
    data["projects"][1]["open_date"] = days(-30).isoformat()
    data["projects"][1]["close_date"] = days(-1).isoformat()

    assert load(data).get_project(BAYVIEW).visible is False
    assert load(data, HIDE_CLOSED_PROJECTS_ON_LOAD=False).get_project(BAYVIEW).visible is True


def test_unit_reserved_defaults_by_status():
    data = base_snapshot()
    data["projects"][0]["flat_types"][1]["remaining_units"] = 2
    data["applications"] = [
        {"applicant_nric": SARAH, "project_name": ACACIA, "flat_type": "3-Room", "status": "booked"},
    ]
    engine = load(data)
    assert remaining(engine, ACACIA, "3-Room") == 2
    assert engine.booking_receipt(SARAH).price == 450000


@pytest.mark.parametrize("mutate", [
    lambda d: d["projects"][0]["flat_types"][0].update(remaining_units=5),
    lambda d: d["projects"][0].update(close_date=days(-10).isoformat()),
    lambda d: d["users"].append(dict(d["users"][0])),
    lambda d: d["users"][0].update(marital_status="Divorced"),
    lambda d: d.update(applications=[
        {"applicant_nric": SARAH, "project_name": ACACIA, "flat_type": "3-Room"},
        {"applicant_nric": SARAH.lower(), "project_name": BAYVIEW, "flat_type": "3-Room"},
    ]),
])
def test_invalid_snapshots_are_rejected(mutate):
    data = base_snapshot()
    mutate(data)
    with pytest.raises(SchemaError):
        EngineSnapshot.model_validate(data)


def test_failed_load_leaves_database_unchanged(engine):
    engine.submit_application(SARAH, ACACIA, "3-Room")
    before = engine.export_snapshot()

    valid = EngineSnapshot.model_validate(base_snapshot())
    # Built without validation so the duplicate surfaces half-way through the load.
    broken = EngineSnapshot.model_construct(
        users=valid.users + [valid.users[0]],
        projects=valid.projects,
        applications=[],
        registrations=[],
    )

    with pytest.raises(DuplicateKeyError):
        engine.load_snapshot(broken)
    assert engine.export_snapshot() == before


def test_export_then_reload_keeps_state(engine, tmp_path):
    engine.register_officer(DANIEL, ACACIA)
    engine.process_officer_registration(MICHAEL, DANIEL, ACACIA, Decision.APPROVE)
    engine.submit_application(SARAH, ACACIA, "3-Room")
    engine.approve_reject_application(MICHAEL, SARAH, ACACIA, Decision.REJECT)
    engine.submit_application(SARAH, ACACIA, "2-Room")
    exported = engine.export_snapshot()

    path = tmp_path / "snapshot.json"
    write_snapshot(exported, path)
    reloaded = BTOEngine(InMemoryDatabase(), Settings(_env_file=None))
    reloaded.load_snapshot(read_snapshot(path))

    assert reloaded.export_snapshot() == exported
    assert [a.status for a in reloaded.application_history(SARAH)] == ["unsuccessful", "pending"]
    assert remaining(reloaded, ACACIA, "2-Room") == 1
    assert reloaded.get_project(ACACIA).officers == ["Daniel"]


def roster_conflict_with_other_project(data):
    data["projects"][0]["officers"] = ["Daniel"]
    data["registrations"] = [{"officer_nric": DANIEL, "project_name": BAYVIEW}]


def officer_on_two_rosters(data):
    data["projects"][0]["officers"] = ["Daniel"]
    data["projects"][1]["officers"] = [DANIEL]


def roster_with_rejected_registration(data):
    data["projects"][0]["officers"] = ["Daniel"]
    data["registrations"] = [
        {"officer_nric": DANIEL, "project_name": ACACIA, "status": "rejected"},
    ]


def application_to(project, flat_type="3-Room", applicant=SARAH):
    def mutate(data):
        data["applications"] = [
            {"applicant_nric": applicant, "project_name": project, "flat_type": flat_type},
        ]
    return mutate


def registration_for(officer, project):
    def mutate(data):
        data["registrations"] = [{"officer_nric": officer, "project_name": project}]
    return mutate


def project_managed_by(nric):
    def mutate(data):
        data["projects"][1]["manager_nric"] = nric
    return mutate


@pytest.mark.parametrize("mutate", [
    roster_conflict_with_other_project,
    officer_on_two_rosters,
    roster_with_rejected_registration,
    application_to("Ghost"),
    application_to(ACACIA, flat_type="5-Room"),
    application_to(ACACIA, applicant="S0000000Z"),
    application_to(ACACIA, applicant=MICHAEL),
    registration_for("S0000000Z", ACACIA),
    registration_for(SARAH, ACACIA),
    registration_for(DANIEL, "Ghost"),
    project_managed_by("S0000000Z"),
    project_managed_by(DANIEL),
])
def test_inconsistent_snapshot_is_rejected_and_nothing_changes(engine, mutate):
    engine.submit_application(SARAH, ACACIA, "3-Room")
    before = engine.export_snapshot()

    data = base_snapshot()
    mutate(data)
    with pytest.raises(ValidationError):
        engine.load_snapshot(EngineSnapshot.model_validate(data))

    assert engine.export_snapshot() == before
    for nric in (DANIEL, EMILY):
        active = [r for r in engine.list_registrations() if r.officer_nric == nric and r.status != "rejected"]
        assert len(active) <= 1


def test_roster_agrees_with_an_approved_registration(engine):
    data = base_snapshot()
    data["projects"][0]["officers"] = ["Daniel"]
    data["registrations"] = [
        {"officer_nric": DANIEL, "project_name": ACACIA, "status": "approved"},
        {"officer_nric": DANIEL, "project_name": BAYVIEW, "status": "rejected"},
    ]
    engine.load_snapshot(EngineSnapshot.model_validate(data))
    assert engine.registration_status(DANIEL, ACACIA).status == "approved"
    assert engine.get_project(ACACIA).current_officer_slots == 1
