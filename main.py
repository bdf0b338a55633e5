import logging
import os
import secrets
import hashlib
import shutil
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone, date
from typing import Optional, List, Dict, Any, Literal, Tuple

import jwt
from fastapi import APIRouter, FastAPI, HTTPException, Depends, Header, Query, Request, Form, File, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import EmailStr
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId

from config import Settings
from database import connect, ensure_indexes, create_document, get_documents, find_by_ids
from schemas import (CamelModel, Role, LeaveStatus, LEAVE_STATUSES, User as UserSchema,
                     Department as DepartmentSchema, Employee as EmployeeSchema, Leave as LeaveSchema,
                     Salary as SalarySchema)

logger = logging.getLogger(__name__)

USER_PUBLIC = {"password": 0}
ALLOWED_IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png'}
IdKind = Literal['auto', 'employee', 'user']


# ----------------------- Utils -----------------------

def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    h = hashlib.pbkdf2_hmac('sha256', password.encode(), salt.encode(), 100_000).hex()
    return f"{salt}${h}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        salt, h = password_hash.split('$')
        check = hashlib.pbkdf2_hmac('sha256', password.encode(), salt.encode(), 100_000).hex()
        return secrets.compare_digest(h, check)
    except ValueError:
        return False


def issue_token(user: Dict[str, Any], settings: Settings) -> str:
    payload = {
        "id": str(user['_id']),
        "role": user['role'],
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.token_ttl_days),
    }
    return jwt.encode(payload, settings.jwt_key, algorithm="HS256")


def current_month_bounds(today: date) -> Tuple[datetime, datetime]:
    """First instant of the month containing ``today`` and of the month after it."""
    first = datetime(today.year, today.month, 1)
    if today.month == 12:
        return first, datetime(today.year + 1, 1, 1)
    return first, datetime(today.year, today.month + 1, 1)


def save_image(image: UploadFile, upload_dir: str) -> str:
    ext = os.path.splitext(image.filename or '')[1].lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only jpg, jpeg and png images are allowed")
    os.makedirs(upload_dir, exist_ok=True)
    path = os.path.join(upload_dir, f"{uuid.uuid4().hex}{ext}")
    with open(path, 'wb') as out:
        shutil.copyfileobj(image.file, out)
    return path


def remove_image(path: str) -> None:
    if path and os.path.exists(path):
        os.remove(path)


# ----------------------- Joins -----------------------

def populate_employees(db: Database, employees: List[dict], user_projection: Optional[dict] = None,
                       department_projection: Optional[dict] = None, drop_orphans: bool = True) -> List[dict]:
    """Replace userId and department references with the referenced documents."""
    users = find_by_ids(db, 'user', [e.get('userId') for e in employees], user_projection or USER_PUBLIC)
    departments = find_by_ids(db, 'department', [e.get('department') for e in employees], department_projection)
    out = []
    for e in employees:
        user = users.get(str(e.get('userId')))
        if user is None and drop_orphans:
            continue
        out.append({**e, "userId": user, "department": departments.get(str(e.get('department')))})
    return out


def populate_leaves(db: Database, leaves: List[dict], user_fields: Tuple[str, ...] = ('name',),
                    drop_dangling: bool = True) -> List[dict]:
    employees = find_by_ids(db, 'employee', [l.get('employeeId') for l in leaves])
    populated = populate_employees(db, list(employees.values()), {f: 1 for f in user_fields}, {"name": 1},
                                   drop_orphans=drop_dangling)
    by_id = {str(e['_id']): e for e in populated}
    out = []
    for l in leaves:
        emp = by_id.get(str(l.get('employeeId')))
        if emp is None and drop_dangling:
            continue
        out.append({**l, "employeeId": emp})
    return out


def resolve_employee_ids(db: Database, id_str: str, by: str, collection: str) -> List[ObjectId]:
    """Employee ids whose records in ``collection`` should be returned for ``id_str``.

    ``auto`` tries the id as an Employee id first and falls back to treating it
    as the owning User id when nothing is recorded under it.
    """
    key = oid(id_str)
    if by == 'employee':
        return [key]
    if by == 'auto' and db[collection].find_one({"employeeId": key}, {"_id": 1}):
        return [key]
    emp = db['employee'].find_one({"userId": key}, {"_id": 1})
    return [emp['_id']] if emp else []


# ----------------------- Dependencies -----------------------

def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_user(authorization: Optional[str] = Header(None), db: Database = Depends(get_db),
                     settings: Settings = Depends(get_settings)) -> dict:
    if not authorization or not authorization.lower().startswith('bearer '):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization.split(' ', 1)[1]
    try:
        payload = jwt.decode(token, settings.jwt_key, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not ObjectId.is_valid(payload.get('id')):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db['user'].find_one({"_id": ObjectId(payload['id'])}, USER_PUBLIC)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_roles(*roles: str):
    def dep(user: dict = Depends(get_current_user)):
        if user.get('role') not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return dep


# ----------------------- Request Models -----------------------

class LoginRequest(CamelModel):
    email: EmailStr
    password: str

class EmployeeUpdate(CamelModel):
    name: Optional[str] = None
    marital_status: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[str] = None
    salary: Optional[float] = None

class DepartmentUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None

class LeaveCreate(CamelModel):
    user_id: str
    leave_type: str
    start_date: date
    end_date: date
    reason: Optional[str] = None

class LeaveAction(CamelModel):
    status: LeaveStatus

class SalaryCreate(CamelModel):
    employee_id: str
    basic_salary: float
    allowances: float = 0
    deductions: float = 0
    pay_date: date

class ChangePassword(CamelModel):
    user_id: str
    old_password: str
    new_password: str


# ----------------------- Auth -----------------------
auth_router = APIRouter(prefix='/api/auth')

@auth_router.post('/login')
def login(payload: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db['user'].find_one({"email": payload.email})
    if not user:
        raise HTTPException(status_code=404, detail="User does not exist")
    if not verify_password(payload.password, user.get('password', '')):
        raise HTTPException(status_code=401, detail="Invalid password")
    logger.info("User %s logged in", user['_id'])
    return {
        "success": True,
        "token": issue_token(user, settings),
        "user": serialize({"_id": user['_id'], "name": user['name'], "role": user['role']}),
    }

@auth_router.get('/verify')
def verify(user: dict = Depends(get_current_user)):
    return {"success": True, "user": serialize(user)}


# ----------------------- Employees -----------------------
employee_router = APIRouter(prefix='/api/employee')

@employee_router.post('')
def add_employee(
    name: str = Form(...),
    email: EmailStr = Form(...),
    password: str = Form(...),
    role: Role = Form('employee'),
    employee_id: str = Form(..., alias='employeeId'),
    dob: Optional[date] = Form(None),
    gender: Optional[str] = Form(None),
    marital_status: Optional[str] = Form(None, alias='maritalStatus'),
    designation: Optional[str] = Form(None),
    department: Optional[str] = Form(None),
    salary: float = Form(0),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: dict = Depends(require_roles('admin')),
):
    if db['user'].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already registered in employee system")
    department_id = oid(department) if department else None
    if department_id and not db['department'].find_one({"_id": department_id}):
        raise HTTPException(status_code=404, detail="Department not found")
    profile_image = save_image(image, settings.upload_dir) if image is not None and image.filename else ''

    user = UserSchema(name=name, email=email, password=hash_password(password), role=role,
                      profile_image=profile_image)
    try:
        user_id = create_document(db, 'user', user)
    except DuplicateKeyError:
        remove_image(profile_image)
        raise HTTPException(status_code=400, detail="User already registered in employee system")
    employee = EmployeeSchema(
        user_id=ObjectId(user_id),
        employee_id=employee_id,
        dob=dob,
        gender=gender,
        marital_status=marital_status,
        designation=designation,
        department=department_id,
        salary=salary,
    )
    try:
        create_document(db, 'employee', employee)
    except Exception:
        logger.error("Employee insert failed, removing user %s", user_id)
        db['user'].delete_one({"_id": ObjectId(user_id)})
        remove_image(profile_image)
        raise
    logger.info("Created employee %s for user %s", employee_id, user_id)
    return {"success": True, "message": "Employee created successfully"}

@employee_router.get('')
def list_employees(db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    employees = populate_employees(db, get_documents(db, 'employee'))
    return {"success": True, "employees": serialize(employees)}

@employee_router.post('/cleanup')
def cleanup_orphans(db: Database = Depends(get_db), _: dict = Depends(require_roles('admin'))):
    employees = get_documents(db, 'employee')
    live = find_by_ids(db, 'user', [e.get('userId') for e in employees], {"_id": 1})
    removed = 0
    for emp in employees:
        if str(emp.get('userId')) not in live:
            logger.info("Deleting orphan employee %s (user %s not found)", emp['_id'], emp.get('userId'))
            removed += db['employee'].delete_one({"_id": emp['_id']}).deleted_count
    return {"success": True, "removed": removed}

@employee_router.get('/department/{dep_id}')
def list_employees_by_department(dep_id: str, db: Database = Depends(get_db),
                                 _: dict = Depends(get_current_user)):
    employees = populate_employees(db, get_documents(db, 'employee', {"department": oid(dep_id)}))
    return {"success": True, "employees": serialize(employees)}

@employee_router.get('/{id}')
def get_employee(id: str, by: IdKind = Query('auto'), db: Database = Depends(get_db),
                 _: dict = Depends(get_current_user)):
    key = oid(id)
    emp = None
    if by in ('auto', 'employee'):
        emp = db['employee'].find_one({"_id": key})
    if emp is None and by in ('auto', 'user'):
        emp = db['employee'].find_one({"userId": key})
    employee = populate_employees(db, [emp], drop_orphans=False)[0] if emp else None
    return {"success": True, "employee": serialize(employee)}

@employee_router.put('/{id}')
def update_employee(id: str, payload: EmployeeUpdate, db: Database = Depends(get_db),
                    _: dict = Depends(require_roles('admin'))):
    emp = db['employee'].find_one({"_id": oid(id)})
    if not emp:
        raise HTTPException(status_code=404, detail="Employee not found")
    user = db['user'].find_one({"_id": emp['userId']})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    changes = payload.model_dump(exclude_unset=True, by_alias=True)
    name = changes.pop('name', None)
    if 'department' in changes:
        changes['department'] = oid(changes['department']) if changes['department'] else None
        if changes['department'] and not db['department'].find_one({"_id": changes['department']}):
            raise HTTPException(status_code=404, detail="Department not found")
    now = datetime.now(timezone.utc)
    if name is not None:
        db['user'].update_one({"_id": user['_id']}, {"$set": {"name": name, "updatedAt": now}})
    try:
        db['employee'].update_one({"_id": emp['_id']}, {"$set": {**changes, "updatedAt": now}})
    except Exception:
        if name is not None:
            logger.error("Employee update failed, restoring name of user %s", user['_id'])
            db['user'].update_one({"_id": user['_id']}, {"$set": {"name": user['name']}})
        raise
    return {"success": True, "message": "Employee updated successfully"}

@employee_router.delete('/{id}')
def delete_employee(id: str, db: Database = Depends(get_db), _: dict = Depends(require_roles('admin'))):
    emp = db['employee'].find_one({"_id": oid(id)})
    if not emp:
        raise HTTPException(status_code=404, detail="Employee not found")
    db['leave'].delete_many({"employeeId": emp['_id']})
    db['salary'].delete_many({"employeeId": emp['_id']})
    db['employee'].delete_one({"_id": emp['_id']})
    db['user'].delete_one({"_id": emp['userId']})
    logger.info("Deleted employee %s and user %s", emp['_id'], emp['userId'])
    return {"success": True, "message": "Employee deleted successfully"}


# ----------------------- Departments -----------------------
department_router = APIRouter(prefix='/api/department')

@department_router.post('')
def add_department(payload: DepartmentSchema, db: Database = Depends(get_db),
                   _: dict = Depends(require_roles('admin'))):
    if db['department'].find_one({"name": payload.name}):
        raise HTTPException(status_code=400, detail="Department already exists")
    try:
        dep_id = create_document(db, 'department', payload)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Department already exists")
    return {"success": True, "department": serialize(db['department'].find_one({"_id": ObjectId(dep_id)}))}

@department_router.get('')
def list_departments(db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    return {"success": True, "departments": serialize(get_documents(db, 'department'))}

@department_router.get('/{id}')
def get_department(id: str, db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    dep = db['department'].find_one({"_id": oid(id)})
    if not dep:
        raise HTTPException(status_code=404, detail="Department not found")
    return {"success": True, "department": serialize(dep)}

@department_router.put('/{id}')
def update_department(id: str, payload: DepartmentUpdate, db: Database = Depends(get_db),
                      _: dict = Depends(require_roles('admin'))):
    changes = payload.model_dump(exclude_unset=True)
    changes['updatedAt'] = datetime.now(timezone.utc)
    try:
        result = db['department'].update_one({"_id": oid(id)}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Department already exists")
    if not result.matched_count:
        raise HTTPException(status_code=404, detail="Department not found")
    return {"success": True, "department": serialize(db['department'].find_one({"_id": oid(id)}))}

@department_router.delete('/{id}')
def delete_department(id: str, db: Database = Depends(get_db), _: dict = Depends(require_roles('admin'))):
    result = db['department'].delete_one({"_id": oid(id)})
    if not result.deleted_count:
        raise HTTPException(status_code=404, detail="Department not found")
    return {"success": True}


# ----------------------- Leave -----------------------
leave_router = APIRouter(prefix='/api/leave')

@leave_router.post('')
def add_leave(payload: LeaveCreate, db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    if payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="End date is before start date")
    employee = db['employee'].find_one({"userId": oid(payload.user_id)})
    if not employee:
        raise HTTPException(status_code=404, detail="Employee not found")
    leave = LeaveSchema(
        employee_id=employee['_id'],
        leave_type=payload.leave_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
    )
    leave_id = create_document(db, 'leave', leave)
    return {"success": True, "leaveId": leave_id}

@leave_router.get('')
def list_leaves(db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    leaves = populate_leaves(db, get_documents(db, 'leave'))
    return {"success": True, "leaves": serialize(leaves)}

@leave_router.get('/detail/{id}')
def get_leave_detail(id: str, db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    leave = db['leave'].find_one({"_id": oid(id)})
    if not leave:
        raise HTTPException(status_code=404, detail="Leave not found")
    leave = populate_leaves(db, [leave], user_fields=('name', 'profileImage'), drop_dangling=False)[0]
    return {"success": True, "leave": serialize(leave)}

@leave_router.get('/{id}')
def get_leave(id: str, by: IdKind = Query('auto'), db: Database = Depends(get_db),
              _: dict = Depends(get_current_user)):
    employee_ids = resolve_employee_ids(db, id, by, 'leave')
    leaves = get_documents(db, 'leave', {"employeeId": {"$in": employee_ids}}) if employee_ids else []
    return {"success": True, "leaves": serialize(leaves)}

@leave_router.put('/{id}')
def update_leave(id: str, payload: LeaveAction, db: Database = Depends(get_db),
                 _: dict = Depends(require_roles('admin'))):
    result = db['leave'].update_one(
        {"_id": oid(id)},
        {"$set": {"status": payload.status, "updatedAt": datetime.now(timezone.utc)}},
    )
    if not result.matched_count:
        raise HTTPException(status_code=404, detail="Leave not found")
    logger.info("Leave %s set to %s", id, payload.status)
    return {"success": True}


# ----------------------- Salary -----------------------
salary_router = APIRouter(prefix='/api/salary')

@salary_router.post('')
def add_salary(payload: SalaryCreate, db: Database = Depends(get_db), _: dict = Depends(require_roles('admin'))):
    employee_id = oid(payload.employee_id)
    if not db['employee'].find_one({"_id": employee_id}):
        raise HTTPException(status_code=404, detail="Employee not found")
    salary = SalarySchema(
        employee_id=employee_id,
        basic_salary=payload.basic_salary,
        allowances=payload.allowances,
        deductions=payload.deductions,
        net_salary=payload.basic_salary + payload.allowances - payload.deductions,
        pay_date=payload.pay_date,
    )
    salary_id = create_document(db, 'salary', salary)
    return {"success": True, "salaryId": salary_id, "netSalary": salary.net_salary}

@salary_router.get('/{id}')
def get_salary(id: str, by: IdKind = Query('auto'), db: Database = Depends(get_db),
               _: dict = Depends(get_current_user)):
    employee_ids = resolve_employee_ids(db, id, by, 'salary')
    records = list(db['salary'].find({"employeeId": {"$in": employee_ids}}).sort('payDate', -1)) if employee_ids else []
    employees = find_by_ids(db, 'employee', employee_ids)
    records = [{**r, "employeeId": employees.get(str(r['employeeId']))} for r in records]
    return {"success": True, "salary": serialize(records)}


# ----------------------- Settings -----------------------
setting_router = APIRouter(prefix='/api/setting')

@setting_router.put('/change-password')
def change_password(payload: ChangePassword, db: Database = Depends(get_db),
                    current: dict = Depends(get_current_user)):
    user_id = oid(payload.user_id)
    if current['_id'] != user_id and current.get('role') != 'admin':
        raise HTTPException(status_code=403, detail="Forbidden")
    user = db['user'].find_one({"_id": user_id})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.old_password, user.get('password', '')):
        raise HTTPException(status_code=401, detail="Wrong old password")
    db['user'].update_one({"_id": user_id}, {"$set": {
        "password": hash_password(payload.new_password),
        "updatedAt": datetime.now(timezone.utc),
    }})
    return {"success": True}


# ----------------------- Dashboard -----------------------
dashboard_router = APIRouter(prefix='/api/dashboard')

@dashboard_router.get('/summary')
def get_summary(db: Database = Depends(get_db), _: dict = Depends(get_current_user)):
    total_employees = db['employee'].count_documents({})
    total_departments = db['department'].count_documents({})

    start, end = current_month_bounds(date.today())
    salaries = list(db['salary'].aggregate([
        {"$match": {"payDate": {"$gte": start, "$lt": end}}},
        {"$group": {"_id": None, "totalSalary": {"$sum": "$netSalary"}}},
    ]))

    applied_for = db['leave'].distinct('employeeId')
    by_status = {s: 0 for s in LEAVE_STATUSES}
    for row in db['leave'].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        if row['_id'] in by_status:
            by_status[row['_id']] = row['count']

    return {
        "success": True,
        "totalEmployees": total_employees,
        "totalDepartments": total_departments,
        "totalSalary": salaries[0]['totalSalary'] if salaries else 0,
        "leaveSummary": {
            "appliedFor": len(applied_for),
            "approved": by_status['Approved'],
            "rejected": by_status['Rejected'],
            "pending": by_status['Pending'],
        },
    }


# ----------------------- App -----------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(app.state.db)
    yield


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = FastAPI(title="Employee Management System API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db if db is not None else connect(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail},
                            headers=getattr(exc, 'headers', None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get('loc', ()) if p not in ('body', 'query', 'path', 'form'))
        message = first.get('msg', 'Invalid request')
        return JSONResponse(status_code=422,
                            content={"success": False, "error": f"{field}: {message}" if field else message})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Server error"})

    @app.get("/")
    def read_root():
        return {"message": "EMS Backend running"}

    for router in (auth_router, employee_router, department_router, leave_router, salary_router,
                   setting_router, dashboard_router):
        app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
