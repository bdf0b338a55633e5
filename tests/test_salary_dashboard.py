from datetime import date, datetime, timedelta

from bson import ObjectId

from main import current_month_bounds


def pay(client, headers, employee_id, pay_date, basic=5000, allowances=0, deductions=500):
    return client.post('/api/salary', json={
        "employeeId": str(employee_id), "basicSalary": basic, "allowances": allowances,
        "deductions": deductions, "payDate": pay_date.isoformat(),
    }, headers=headers)


def test_current_month_bounds():
    assert current_month_bounds(date(2026, 2, 14)) == (datetime(2026, 2, 1), datetime(2026, 3, 1))
    assert current_month_bounds(date(2026, 12, 31)) == (datetime(2026, 12, 1), datetime(2027, 1, 1))


def test_add_salary_computes_net(client, db, admin_headers, make_employee):
    emp = make_employee()
    res = pay(client, admin_headers, emp['_id'], date(2026, 1, 31), basic=5000, allowances=300, deductions=800)
    assert res.status_code == 200
    assert res.json()["netSalary"] == 4500
    assert db['salary'].find_one({})['netSalary'] == 4500


def test_add_salary_unknown_employee(client, admin_headers):
    assert pay(client, admin_headers, ObjectId(), date.today()).status_code == 404


def test_get_salary_by_employee_or_user_id(client, admin_headers, make_employee):
    emp = make_employee()
    pay(client, admin_headers, emp['_id'], date(2026, 1, 31))
    pay(client, admin_headers, emp['_id'], date(2026, 2, 28))

    by_employee = client.get(f"/api/salary/{emp['_id']}", headers=admin_headers).json()["salary"]
    by_user = client.get(f"/api/salary/{emp['userId']}", headers=admin_headers).json()["salary"]
    assert by_employee == by_user
    assert [s["payDate"][:10] for s in by_employee] == ["2026-02-28", "2026-01-31"]
    assert by_employee[0]["employeeId"]["employeeId"] == "EMP001"


def test_summary_empty(client, admin_headers):
    body = client.get('/api/dashboard/summary', headers=admin_headers).json()
    assert body == {
        "success": True,
        "totalEmployees": 0,
        "totalDepartments": 0,
        "totalSalary": 0,
        "leaveSummary": {"appliedFor": 0, "approved": 0, "rejected": 0, "pending": 0},
    }


def test_summary_counts_current_month_salary_only(client, admin_headers, make_department, make_employee):
    emp = make_employee(department=make_department('Engineering'))
    first, _ = current_month_bounds(date.today())
    pay(client, admin_headers, emp['_id'], date.today())
    pay(client, admin_headers, emp['_id'], first.date() - timedelta(days=1), deductions=0)

    body = client.get('/api/dashboard/summary', headers=admin_headers).json()
    assert body["totalEmployees"] == 1
    assert body["totalDepartments"] == 1
    assert body["totalSalary"] == 4500


def test_summary_leave_tally(client, admin_headers, make_employee):
    a = make_employee()
    b = make_employee()
    make_employee()
    ids = []
    for emp in (a, a, b):
        res = client.post('/api/leave', json={"userId": str(emp['userId']), "leaveType": "Sick Leave",
                                              "startDate": "2026-04-01", "endDate": "2026-04-02"},
                          headers=admin_headers)
        ids.append(res.json()["leaveId"])
    client.put(f"/api/leave/{ids[0]}", json={"status": "Approved"}, headers=admin_headers)

    summary = client.get('/api/dashboard/summary', headers=admin_headers).json()["leaveSummary"]
    assert summary == {"appliedFor": 2, "approved": 1, "rejected": 0, "pending": 2}
