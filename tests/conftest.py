from datetime import datetime, timedelta

import pytest
from flask import has_app_context
from werkzeug.security import generate_password_hash

from app import create_app
from config import TestingConfig
from models import User, db

START = datetime(2024, 3, 11, 9, 0)
PASSWORD = "secret123"


class ManualClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def app(clock):
    app = create_app(TestingConfig, clock=clock)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def portal(app):
    """Services with an app context pushed, for tests that skip HTTP."""
    with app.app_context():
        yield app.extensions["portal"]


@pytest.fixture
def make_student(app):
    counter = {"n": 0}

    def _save(user):
        db.session.add(user)
        db.session.commit()
        return user.id

    def _make(**fields):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=fields.pop("email", f"student{n}@ust-legazpi.edu.ph"),
            password_hash=generate_password_hash(fields.pop("password", PASSWORD)),
            role="student",
            first_name=fields.pop("first_name", "Student"),
            last_name=fields.pop("last_name", str(n)),
            **fields,
        )
        if has_app_context():
            return _save(user)
        with app.app_context():
            return _save(user)

    return _make


def _login(client, email, password):
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.get_json()
    return client


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def student_client(app):
    client = app.test_client()
    response = client.post("/api/auth/register", json={
        "email": "juan@ust-legazpi.edu.ph",
        "password": PASSWORD,
        "firstName": "Juan",
        "lastName": "Dela Cruz",
        "yearLevel": 2,
        "course": "BS Psychology",
    })
    assert response.status_code == 201, response.get_json()
    return client


@pytest.fixture
def admin_client(app):
    return _login(
        app.test_client(),
        TestingConfig.ADMIN_EMAIL,
        TestingConfig.ADMIN_PASSWORD,
    )
