import random
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import DocumentStore
from main import build_services, create_app
from session import register_user


class Clock:
    """Moves forward one second on every read so writes get distinct timestamps."""

    def __init__(self, start=datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc), step=timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self):
        self.current += self.step
        return self.current

    def advance(self, delta: timedelta):
        self.current += delta


class ManualScheduler:
    def __init__(self):
        self.jobs = []

    def __call__(self, delay, fn):
        self.jobs.append((delay, fn))

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for _, fn in jobs:
            fn()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return DocumentStore(mongomock.MongoClient()["portal_test"], clock=clock)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def services(store, scheduler):
    return build_services(store, scheduler=scheduler, rng=random.Random(7))


@pytest.fixture
def make_user(services):
    def _make(user_id, display_name, role="student", email=None, password="password123"):
        email = email or f"{user_id}@student.ie.edu"
        return register_user(services.identity, email, password, display_name, role, user_id=user_id)

    return _make


@pytest.fixture
def student(make_user):
    return make_user("student_vbarbier", "Victor Barbier", email="vbarbier.ieu2021@student.ie.edu")


@pytest.fixture
def other_student(make_user):
    return make_user("student_lbrudniakber", "Lea Brudniak", email="lbrudniakber.ieu2021@student.ie.edu")


@pytest.fixture
def professor(make_user):
    return make_user("prof_llorente", "Professor Carlos Llorente", role="professor",
                     email="cllorente@faculty.ie.edu")


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture
def login(client):
    def _login(email, password="password123"):
        res = client.post("/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['token']}"}

    return _login
