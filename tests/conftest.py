import os

os.environ.pop("DATABASE_URL", None)
os.environ["APP_ENV"] = "production"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_EXPIRES_IN"] = "90d"
os.environ["BCRYPT_ROUNDS"] = "4"

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import email_utils
import main
from auth import password_fields, sign_token
from schemas import User


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["natours_test"]
    monkeypatch.setattr(database, "db", mock_db)
    main.ensure_indexes()
    return mock_db


@pytest.fixture
def client(db):
    return TestClient(main.app, raise_server_exceptions=False)


@pytest.fixture
def create_user(db):
    def _create(name="Test User", email="user@example.com", password="test1234", role="user", **extra):
        doc = User(name=name, email=email, role=role, **password_fields(password, is_new=True))
        data = doc.model_dump(exclude_none=True)
        data.update(extra)
        return database.users.create(data)

    return _create


@pytest.fixture
def auth_header():
    def _header(user, now=None):
        return {"Authorization": f"Bearer {sign_token(user['_id'], now=now)}"}

    return _header


@pytest.fixture
def admin(create_user):
    return create_user(name="Admin", email="admin@example.com", role="admin")


@pytest.fixture
def create_tour(db):
    counter = {"n": 0}

    def _create(**overrides):
        counter["n"] += 1
        doc = {
            "name": f"The Test Tour Number {counter['n']}",
            "duration": 7,
            "max_group_size": 10,
            "difficulty": "easy",
            "ratings_average": 4.5,
            "ratings_quantity": 0,
            "price": 500,
            "summary": "A tour used in tests",
            "image_cover": "cover.jpg",
            "images": [],
            "start_dates": [],
            "guides": [],
            "secret_tour": False,
            "created_at": datetime(2024, 1, 1) + timedelta(days=counter["n"]),
        }
        doc.update(overrides)
        doc.setdefault("slug", doc["name"].lower().replace(" ", "-"))
        return database.tours.create(doc)

    return _create


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send_email(email, subject, message):
        sent.append({"email": email, "subject": subject, "message": message})

    monkeypatch.setattr(email_utils, "send_email", fake_send_email)
    return sent
