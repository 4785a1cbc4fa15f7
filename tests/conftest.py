"""Test configuration and fixtures."""

from datetime import date, timedelta

import pytest

from config import Settings
from engine import BTOEngine
from infrastructure import InMemoryDatabase
from snapshot import EngineSnapshot

TODAY = date.today()

# Applicants
JOHN = "S1234567A"      # 35, single
SARAH = "T7654321B"     # 40, married
AMY = "S2345678D"       # 22, single
GRACE = "T2109876H"     # 30, married

# Officers
DANIEL = "T1234567J"    # 36, single
EMILY = "S6543210I"     # 29, married

# Managers
MICHAEL = "T8765432F"   # owns Acacia Breeze (open now)
JESSICA = "S5678901G"   # owns Bayview Heights (upcoming)
OLIVER = "S1357913K"    # owns nothing

ACACIA = "Acacia Breeze"
BAYVIEW = "Bayview Heights"


def days(n: int) -> date:
    return TODAY + timedelta(days=n)


def base_snapshot() -> dict:
    return {
        "users": [
            {"nric": JOHN, "name": "John", "age": 35, "marital_status": "Single", "role": "applicant"},
            {"nric": SARAH, "name": "Sarah", "age": 40, "marital_status": "Married", "role": "applicant"},
            {"nric": AMY, "name": "Amy", "age": 22, "marital_status": "Single", "role": "applicant"},
            {"nric": GRACE, "name": "Grace", "age": 30, "marital_status": "Married", "role": "applicant"},
            {"nric": DANIEL, "name": "Daniel", "age": 36, "marital_status": "Single", "role": "officer"},
            {"nric": EMILY, "name": "Emily", "age": 29, "marital_status": "Married", "role": "officer"},
            {"nric": MICHAEL, "name": "Michael", "age": 36, "marital_status": "Single", "role": "manager"},
            {"nric": JESSICA, "name": "Jessica", "age": 26, "marital_status": "Married", "role": "manager"},
            {"nric": OLIVER, "name": "Oliver", "age": 45, "marital_status": "Married", "role": "manager"},
        ],
        "projects": [
            {
                "name": ACACIA,
                "neighborhood": "Yishun",
                "open_date": days(-5).isoformat(),
                "close_date": days(25).isoformat(),
                "manager_nric": MICHAEL,
                "max_officer_slots": 3,
                "flat_types": [
                    {"label": "2-Room", "total_units": 2, "price": 350000},
                    {"label": "3-Room", "total_units": 3, "price": 450000},
                ],
            },
            {
                "name": BAYVIEW,
                "neighborhood": "Boon Lay",
                "open_date": days(30).isoformat(),
                "close_date": days(60).isoformat(),
                "manager_nric": JESSICA,
                "max_officer_slots": 1,
                "flat_types": [
                    {"label": "3-Room", "total_units": 3, "price": 400000},
                ],
            },
        ],
    }


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def engine(db, settings):
    engine = BTOEngine(db, settings)
    engine.load_snapshot(EngineSnapshot.model_validate(base_snapshot()))
    return engine


def remaining(engine: BTOEngine, project: str, label: str) -> int:
    dto = engine.get_project(project)
    return next(f.remaining_units for f in dto.flat_types if f.label == label)
