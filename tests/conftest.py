"""
Pytest configuration: every test gets a fresh in-memory Mongo database
wired into the app through the get_db dependency.
"""

from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from database import get_db
from main import app, JWT_SECRET, JWT_ALGO


@pytest.fixture
def db():
    return mongomock.MongoClient()["digital_life_lessons_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_token(email):
    return jwt.encode({"email": email, "sub": email}, JWT_SECRET, algorithm=JWT_ALGO)


def auth(email):
    return {"Authorization": f"Bearer {make_token(email)}"}


@pytest.fixture
def admin_headers(db):
    db["users"].insert_one({
        "email": "admin@example.com",
        "name": "Admin",
        "role": "admin",
        "accessLevel": "premium",
        "createdAt": datetime.now(timezone.utc),
    })
    return auth("admin@example.com")


@pytest.fixture
def user_headers(db):
    db["users"].insert_one({
        "email": "user@example.com",
        "name": "Plain User",
        "role": "user",
        "accessLevel": "free",
        "createdAt": datetime.now(timezone.utc),
    })
    return auth("user@example.com")


@pytest.fixture
def headers_for():
    return auth
