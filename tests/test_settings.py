import pytest

from conftest import login
from main import verify_password
from seed_db import seed_admin


def test_change_own_password(client, db, make_employee):
    emp = make_employee(email='worker@example.com')
    headers = login(client, 'worker@example.com', 'secret123')
    res = client.put('/api/setting/change-password', json={
        "userId": str(emp['userId']), "oldPassword": "secret123", "newPassword": "better456",
    }, headers=headers)
    assert res.json() == {"success": True}
    assert verify_password('better456', db['user'].find_one({"_id": emp['userId']})['password'])
    login(client, 'worker@example.com', 'better456')


def test_change_password_wrong_old_password(client, make_employee):
    emp = make_employee(email='worker@example.com')
    headers = login(client, 'worker@example.com', 'secret123')
    res = client.put('/api/setting/change-password', json={
        "userId": str(emp['userId']), "oldPassword": "guess", "newPassword": "better456",
    }, headers=headers)
    assert res.status_code == 401


def test_change_someone_elses_password_is_forbidden(client, make_employee):
    make_employee(email='worker@example.com')
    other = make_employee(email='other@example.com')
    headers = login(client, 'worker@example.com', 'secret123')
    res = client.put('/api/setting/change-password', json={
        "userId": str(other['userId']), "oldPassword": "secret123", "newPassword": "x",
    }, headers=headers)
    assert res.status_code == 403


def test_seed_admin_refuses_duplicate_email(db):
    seed_admin(db, 'Admin', 'admin@example.com', 'pw')
    with pytest.raises(ValueError):
        seed_admin(db, 'Admin', 'admin@example.com', 'pw')
    assert db['user'].count_documents({}) == 1
