"""Shared fixtures for the check-in tests."""
from datetime import datetime, timezone

import pytest

from event_checkin.app import create_app
from event_checkin.repositories import InMemoryParticipantRepository
from event_checkin.services import CheckInService


OBJECT_ID = "507f1f77bcf86cd799439011"
OTHER_ID = "68d8ef2841a67890c8b2a3e3"
STAFF = {"door1": "secret-1"}


@pytest.fixture
def participant_data():
    """Two registered participants, neither checked in."""
    return {
        OBJECT_ID: {
            "first_name": "Mariama",
            "last_name": "Kamara",
            "email": "mariama@example.org",
            "phone": "+23276123456",
            "age": 22,
            "gender": "female",
            "district": "Western Area Urban",
            "occupation": "Student",
            "interest": "Civic engagement",
            "participant_code": "KDYES2547",
            "access_code": "AB12CD34",
        },
        OTHER_ID: {
            "first_name": "Ibrahim",
            "last_name": "Sesay",
            "email": "ibrahim@example.org",
            "participant_code": "KDYES2512",
            "access_code": "ZX98YW76",
        },
    }


@pytest.fixture
def repository(participant_data):
    return InMemoryParticipantRepository(participant_data)


class StepClock:
    """Clock that advances one minute per call."""

    def __init__(self, start=datetime(2025, 10, 4, 9, 0, tzinfo=timezone.utc)):
        self.current = start
        self.calls = 0

    def __call__(self):
        value = self.current.replace(minute=self.calls % 60)
        self.calls += 1
        return value


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def service(repository, clock):
    return CheckInService(repository, clock=clock)


@pytest.fixture
def checkin_app(repository):
    return create_app(
        {"SECRET_KEY": "test-secret", "SCANNER_AUTH_REQUIRED": True},
        repository=repository,
        staff_data=dict(STAFF),
    )


@pytest.fixture
def client(checkin_app):
    return checkin_app.app.test_client()


@pytest.fixture
def logged_in_client(client):
    response = client.post("/login", json={"staffId": "door1", "password": "secret-1"})
    assert response.status_code == 200
    return client
