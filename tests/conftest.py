from datetime import date
from typing import Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from seed_db import seed_admin


@pytest.fixture
def db():
    return mongomock.MongoClient()['ems_test']


@pytest.fixture
def settings(tmp_path):
    return Settings(jwt_key='test-secret', upload_dir=str(tmp_path / 'uploads'), log_level='DEBUG')


@pytest.fixture
def client(settings, db):
    with TestClient(create_app(settings, db=db)) as c:
        yield c


def login(client, email: str, password: str) -> dict:
    res = client.post('/api/auth/login', json={"email": email, "password": password})
    assert res.status_code == 200, res.json()
    return {"Authorization": f"Bearer {res.json()['token']}"}


@pytest.fixture
def admin_headers(client, db):
    seed_admin(db, 'Admin', 'admin@example.com', 'admin123')
    return login(client, 'admin@example.com', 'admin123')


@pytest.fixture
def make_department(client, admin_headers):
    def _make(name: str = 'Engineering') -> str:
        res = client.post('/api/department', json={"name": name, "description": f"{name} team"},
                          headers=admin_headers)
        assert res.status_code == 200, res.json()
        return res.json()['department']['_id']
    return _make


@pytest.fixture
def make_employee(client, db, admin_headers):
    """Create an employee through the API and return its stored document."""
    counter = {"n": 0}

    def _make(email: Optional[str] = None, department: Optional[str] = None, **fields) -> dict:
        counter["n"] += 1
        n = counter["n"]
        data = {
            "name": f"Employee {n}",
            "email": email or f"employee{n}@example.com",
            "password": "secret123",
            "employeeId": f"EMP{n:03d}",
            "dob": date(1990, 1, n).isoformat(),
            "gender": "female",
            "maritalStatus": "single",
            "designation": "Engineer",
            "salary": "5000",
        }
        if department:
            data["department"] = department
        data.update(fields)
        res = client.post('/api/employee', data=data, headers=admin_headers)
        assert res.status_code == 200, res.json()
        user = db['user'].find_one({"email": data["email"]})
        return db['employee'].find_one({"userId": ObjectId(user['_id'])})
    return _make
