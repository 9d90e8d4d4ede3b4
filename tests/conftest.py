import uuid

import mongomock
import pytest
from fastapi.testclient import TestClient

from catalog import seed_products
from database import get_db
from main import app, create_access_token, get_image_store
from moderation import LocalImageStore
from schemas import Identity


@pytest.fixture
def db():
    # mongomock clients share storage per host, so isolate by database name
    return mongomock.MongoClient()[f"canvas_test_{uuid.uuid4().hex}"]


@pytest.fixture
def seeded_db(db):
    seed_products(db)
    return db


@pytest.fixture
def make_user(db):
    def _make(role="user"):
        doc = {
            "name": role.title(),
            "email": f"{role}-{uuid.uuid4().hex[:8]}@example.com",
            "password_hash": "not-used",
            "role": role,
            "cart": [],
        }
        user_id = str(db["user"].insert_one(doc).inserted_id)
        token = create_access_token({"sub": user_id, "role": role})
        return Identity(user_id=user_id, role=role), {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def image_store(tmp_path):
    return LocalImageStore(str(tmp_path / "uploads"))


@pytest.fixture
def client(seeded_db, image_store):
    app.dependency_overrides[get_db] = lambda: seeded_db
    app.dependency_overrides[get_image_store] = lambda: image_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
