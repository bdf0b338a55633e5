"""
EMS Database Schemas

Each Pydantic model corresponds to a MongoDB collection (lowercase of class name).
Fields are snake_case in Python and stored camelCase, which is also the shape
the API returns.
"""
from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal['admin', 'employee']
LeaveStatus = Literal['Pending', 'Approved', 'Rejected']
LEAVE_STATUSES = ('Pending', 'Approved', 'Rejected')


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, arbitrary_types_allowed=True)


# Auth / Users
class User(CamelModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password: str = Field(..., description="Salted password hash")
    role: Role = Field('employee', description="User role")
    profile_image: str = Field('', description="Path of the uploaded profile image")


# Organization
class Department(CamelModel):
    name: str
    description: Optional[str] = None


class Employee(CamelModel):
    user_id: ObjectId
    employee_id: str
    dob: Optional[date] = None
    gender: Optional[str] = None
    marital_status: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[ObjectId] = None
    salary: float = 0


# Leave
class Leave(CamelModel):
    employee_id: ObjectId
    leave_type: str
    start_date: date
    end_date: date
    reason: Optional[str] = None
    status: LeaveStatus = 'Pending'


# Payroll
class Salary(CamelModel):
    employee_id: ObjectId
    basic_salary: float
    allowances: float = 0
    deductions: float = 0
    net_salary: float
    pay_date: date
