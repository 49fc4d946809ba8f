import uuid
from datetime import datetime

import mongomock
import pytest

import database

# Must run before main/realtime import `db` from the database module.
database.db = mongomock.MongoClient()["savings_test"]

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
import reports  # noqa: E402


@pytest.fixture(autouse=True)
def db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    reports.reset_report_stores()
    yield database.db


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def make_user(db):
    def _make(name, role="member", **fields):
        doc = {
            "name": name,
            "email": f"{name.lower()}@example.com",
            "phone": "0788000000",
            "role": role,
            "created_at": datetime(2023, 1, 1),
            "is_blocked": False,
        }
        doc.update(fields)
        return str(db["users"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def login(db):
    def _login(user_id):
        token = uuid.uuid4().hex
        db["sessions"].insert_one({"user_id": user_id, "token": token, "created_at": datetime(2024, 1, 1)})
        return {"Authorization": f"Bearer {token}"}
    return _login


@pytest.fixture
def admin(make_user, login):
    user_id = make_user("Admin", role="admin")
    headers = login(user_id)
    return {"id": user_id, "headers": headers, "token": headers["Authorization"].split()[1]}


@pytest.fixture
def add_deposit(db):
    def _add(user_id, amount, when, status="accepted", **fields):
        doc = {"user_id": user_id, "amount": amount, "timestamp": when, "status": status}
        doc.update(fields)
        return str(db["deposits"].insert_one(doc).inserted_id)
    return _add


@pytest.fixture
def add_loan(db):
    def _add(user_id, amount, when, payment_status=None, status="accepted", **fields):
        doc = {"user_id": user_id, "amount": amount, "timestamp": when, "status": status,
               "payment_status": payment_status}
        doc.update(fields)
        return str(db["loans"].insert_one(doc).inserted_id)
    return _add
