"""
Database Repositories - 数据访问层
Provides repository pattern for database operations.

Repositories flush but never commit; transaction boundaries belong to the
caller's ``session_scope()``.
"""

import json
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session
from sqlalchemy import select, update, delete, func, or_

from .models import (
    Employee, EmployeeStatus,
    SalaryRecord, SalaryType, PaymentStatus, PaymentMethod,
    UpdateRequest,
    AuditLog,
)


# =============================================================================
# Employee Repository
# =============================================================================

class EmployeeRepository:
    """Repository for Employee operations."""

    @staticmethod
    def create(
        session: Session,
        employee_no: str,
        name: str,
        email: str,
        phone: str,
        base_pay: Decimal = Decimal("0"),
        designation: str = "",
        department: str = "",
        joining_date: Optional[date] = None,
        bank_details_encrypted: Optional[str] = None,
        address: Optional[Dict[str, Any]] = None,
        email_verified: bool = False,
    ) -> Employee:
        """Create a new employee."""
        employee = Employee(
            employee_no=employee_no,
            name=name,
            email=email,
            phone=phone,
            base_pay=base_pay,
            designation=designation,
            department=department,
            joining_date=joining_date,
            bank_details_encrypted=bank_details_encrypted,
            address_json=json.dumps(address) if address else None,
            email_verified=email_verified,
        )
        session.add(employee)
        session.flush()
        return employee

    @staticmethod
    def get_by_employee_no(session: Session, employee_no: str) -> Optional[Employee]:
        """Get employee by employee number."""
        stmt = select(Employee).where(Employee.employee_no == employee_no)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def get_by_verification_hash(session: Session, token_hash: str) -> Optional[Employee]:
        """Get the employee holding an outstanding email verification token."""
        stmt = select(Employee).where(Employee.email_verification_hash == token_hash)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def get_for_update(session: Session, employee_no: str) -> Optional[Employee]:
        """Get employee by employee number, locking the row until commit."""
        stmt = (
            select(Employee)
            .where(Employee.employee_no == employee_no)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def find_by_contact(
        session: Session,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> Optional[Employee]:
        """Find an employee holding either the email or the phone."""
        conditions = []
        if email:
            conditions.append(Employee.email == email)
        if phone:
            conditions.append(Employee.phone == phone)
        if not conditions:
            return None

        stmt = select(Employee).where(or_(*conditions))
        if exclude_id is not None:
            stmt = stmt.where(Employee.id != exclude_id)
        return session.execute(stmt.limit(1)).scalar_one_or_none()

    @staticmethod
    def list_all(
        session: Session,
        status: Optional[EmployeeStatus] = None,
        department: Optional[str] = None,
    ) -> List[Employee]:
        """List employees with optional filters."""
        stmt = select(Employee)

        if status is not None:
            stmt = stmt.where(Employee.status == status)
        if department is not None:
            stmt = stmt.where(Employee.department == department)

        stmt = stmt.order_by(Employee.employee_no)
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def list_active(session: Session) -> List[Employee]:
        """List all active employees."""
        return EmployeeRepository.list_all(session, status=EmployeeStatus.ACTIVE)

    @staticmethod
    def list_employee_numbers(session: Session) -> List[str]:
        """List every assigned employee number."""
        stmt = select(Employee.employee_no)
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def update(
        session: Session,
        employee_id: int,
        **kwargs
    ) -> bool:
        """Update employee fields."""
        stmt = update(Employee).where(Employee.id == employee_id).values(**kwargs)
        result = session.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    def delete(session: Session, employee: Employee) -> None:
        """Physically delete an employee with its records and pending update."""
        session.delete(employee)
        session.flush()

    @staticmethod
    def count(session: Session, status: Optional[EmployeeStatus] = None) -> int:
        """Count employees."""
        stmt = select(func.count(Employee.id))
        if status is not None:
            stmt = stmt.where(Employee.status == status)
        return session.execute(stmt).scalar() or 0

    @staticmethod
    def count_active(session: Session) -> int:
        """Count active employees."""
        return EmployeeRepository.count(session, EmployeeStatus.ACTIVE)


# =============================================================================
# Salary Record Repository
# =============================================================================

class SalaryRecordRepository:
    """Repository for SalaryRecord operations."""

    @staticmethod
    def create(
        session: Session,
        employee: Employee,
        salary_type: SalaryType,
        period: str,
        period_label: str,
        window_start: date,
        window_end: date,
        pay_date: date,
        basic_salary: Decimal,
        allowances: Decimal = Decimal("0"),
        bonus: Decimal = Decimal("0"),
        overtime: Decimal = Decimal("0"),
        deductions: Decimal = Decimal("0"),
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        notes: str = "",
        hours_worked: Optional[Decimal] = None,
        hourly_rate: Optional[Decimal] = None,
    ) -> SalaryRecord:
        """Append a salary record to an employee's history."""
        record = SalaryRecord(
            salary_type=salary_type,
            period=period,
            period_label=period_label,
            window_start=window_start,
            window_end=window_end,
            pay_date=pay_date,
            basic_salary=basic_salary,
            allowances=allowances,
            bonus=bonus,
            overtime=overtime,
            deductions=deductions,
            payment_method=payment_method,
            notes=notes,
            hours_worked=hours_worked,
            hourly_rate=hourly_rate,
        )
        employee.salary_records.append(record)
        session.flush()
        return record

    @staticmethod
    def create_legacy(
        session: Session,
        employee: Employee,
        month: str,
        basic_salary: Decimal,
        allowances: Decimal = Decimal("0"),
        bonus: Decimal = Decimal("0"),
        overtime: Decimal = Decimal("0"),
        deductions: Decimal = Decimal("0"),
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        payment_date: Optional[date] = None,
        pay_date: Optional[date] = None,
        notes: str = "",
    ) -> SalaryRecord:
        """Store a record in the old month-only shape (bulk loads of old data)."""
        record = SalaryRecord(
            month=month,
            basic_salary=basic_salary,
            allowances=allowances,
            bonus=bonus,
            overtime=overtime,
            deductions=deductions,
            payment_status=payment_status,
            payment_method=payment_method,
            payment_date=payment_date,
            pay_date=pay_date,
            notes=notes,
        )
        employee.salary_records.append(record)
        session.flush()
        return record

    @staticmethod
    def get_for_employee(session: Session, employee_id: int, record_id: int) -> Optional[SalaryRecord]:
        """Get a record only if it belongs to the employee."""
        stmt = select(SalaryRecord).where(
            SalaryRecord.id == record_id,
            SalaryRecord.employee_id == employee_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def list_by_employee(session: Session, employee_id: int) -> List[SalaryRecord]:
        """List an employee's records in creation order."""
        stmt = (
            select(SalaryRecord)
            .where(SalaryRecord.employee_id == employee_id)
            .order_by(SalaryRecord.id)
        )
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def find_by_period(
        session: Session,
        employee_id: int,
        salary_type: SalaryType,
        period: str,
    ) -> Optional[SalaryRecord]:
        """Find the record covering a period; monthly lookups also match legacy rows."""
        condition = (SalaryRecord.salary_type == salary_type) & (SalaryRecord.period == period)
        if salary_type == SalaryType.MONTHLY:
            condition = or_(
                condition,
                (SalaryRecord.salary_type.is_(None)) & (SalaryRecord.month == period),
            )
        stmt = (
            select(SalaryRecord)
            .where(SalaryRecord.employee_id == employee_id, condition)
            .order_by(SalaryRecord.id)
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def list_by_status(
        session: Session,
        employee_id: int,
        status: PaymentStatus,
    ) -> List[SalaryRecord]:
        """List an employee's records with a payment status."""
        stmt = (
            select(SalaryRecord)
            .where(
                SalaryRecord.employee_id == employee_id,
                SalaryRecord.payment_status == status,
            )
            .order_by(SalaryRecord.id)
        )
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def list_legacy(session: Session, employee_id: Optional[int] = None) -> List[SalaryRecord]:
        """List records still in the month-only shape."""
        stmt = select(SalaryRecord).where(
            SalaryRecord.salary_type.is_(None),
            SalaryRecord.month.is_not(None),
        )
        if employee_id is not None:
            stmt = stmt.where(SalaryRecord.employee_id == employee_id)
        return list(session.execute(stmt.order_by(SalaryRecord.id)).scalars().all())


# =============================================================================
# Update Request Repository
# =============================================================================

class UpdateRequestRepository:
    """Repository for UpdateRequest operations."""

    @staticmethod
    def create(
        session: Session,
        employee: Employee,
        target_record_id: Optional[int],
        proposed_changes: Dict[str, Any],
        requested_by: str,
        requested_at: datetime,
        challenge_hash: str,
        challenge_expires_at: datetime,
    ) -> UpdateRequest:
        """Attach a new pending update to an employee."""
        request = UpdateRequest(
            target_record_id=target_record_id,
            proposed_changes_json=json.dumps(proposed_changes, sort_keys=True),
            requested_by=requested_by,
            requested_at=requested_at,
            challenge_hash=challenge_hash,
            challenge_expires_at=challenge_expires_at,
            failed_attempts=0,
        )
        employee.pending_update = request
        session.flush()
        return request

    @staticmethod
    def get_by_employee(session: Session, employee_id: int) -> Optional[UpdateRequest]:
        """Get the pending update for an employee."""
        stmt = select(UpdateRequest).where(UpdateRequest.employee_id == employee_id)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def discard(session: Session, employee: Employee) -> bool:
        """Remove the employee's pending update, if any."""
        request = employee.pending_update
        if request is None:
            return False
        employee.pending_update = None
        session.flush()
        return True

    @staticmethod
    def increment_failed_attempts(session: Session, request: UpdateRequest) -> int:
        """Record one failed code entry and return the new count."""
        request.failed_attempts = (request.failed_attempts or 0) + 1
        session.flush()
        return request.failed_attempts

    @staticmethod
    def delete_expired(session: Session, now: datetime) -> int:
        """Delete every request whose challenge has expired."""
        stmt = delete(UpdateRequest).where(UpdateRequest.challenge_expires_at < now)
        result = session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    def decode_changes(request: UpdateRequest) -> Dict[str, Any]:
        """Raw JSON delta as stored (values still serialized)."""
        return json.loads(request.proposed_changes_json)


# =============================================================================
# Audit Log Repository
# =============================================================================

class AuditLogRepository:
    """Repository for AuditLog operations (append-only)."""

    @staticmethod
    def create(
        session: Session,
        actor: str,
        action: str,
        result: str = "success",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """Create an audit log entry."""
        log = AuditLog(
            actor=actor,
            action=action,
            result=result,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
        )
        session.add(log)
        session.flush()
        return log

    @staticmethod
    def list_all(
        session: Session,
        limit: int = 100,
        offset: int = 0,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AuditLog]:
        """List audit logs with filters."""
        stmt = select(AuditLog)

        if actor:
            stmt = stmt.where(AuditLog.actor == actor)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        if resource_id:
            stmt = stmt.where(AuditLog.resource_id == resource_id)
        if start_date:
            stmt = stmt.where(AuditLog.created_at >= start_date)
        if end_date:
            stmt = stmt.where(AuditLog.created_at <= end_date)

        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit)
        return list(session.execute(stmt).scalars().all())
