"""
Business Services - 业务服务层
Provides business logic for the payroll record ledger.

Services open their own transaction with ``session_scope()``, return plain
dicts extracted while the session is open, and raise ``LedgerError``
subclasses on failure.
"""

import json
import hashlib
import logging
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Type
from dataclasses import dataclass, field

import pandas as pd
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payroll_ledger.config import get_settings
from payroll_ledger.db import (
    session_scope,
    init_database,
    create_all_tables,
    Employee, EmployeeStatus,
    SalaryRecord, SalaryType, PaymentStatus, PaymentMethod,
    UpdateRequest,
    EmployeeRepository,
    SalaryRecordRepository,
    UpdateRequestRepository,
    AuditLogRepository,
    quantize_money,
    utcnow,
)
from payroll_ledger.exceptions import (
    LedgerError,
    ValidationError,
    EmployeeNotFound,
    RecordNotFound,
    InvalidStateTransition,
    NoPendingUpdate,
    ExpiredChallenge,
    InvalidCode,
    TooManyAttempts,
    EmailNotVerified,
    InvalidVerificationToken,
    AllocationConflict,
    IdentityAllocationError,
)
from payroll_ledger.security import (
    get_challenge_hasher,
    get_encryption_manager,
    generate_verification_token,
    hash_verification_token,
    get_rate_limiter,
    sanitize_dataframe_for_export,
)
from .identity import IdentityAllocator
from .migration import migrate_record
from .periods import derive_period, is_valid_period, is_month_key, month_key, month_window
from .state_machine import PaymentStatusMachine, UpdateState, UpdateStateMachine

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SalarySummary:
    """Ledger-wide totals across active employees."""
    total_employees: int
    total_paid: Decimal
    total_pending: Decimal
    current_period: str
    current_period_paid: Decimal


@dataclass
class ImportResult:
    """Outcome of a bulk salary record import."""
    imported: int = 0
    legacy: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.imported > 0 or self.failed == 0


# =============================================================================
# Field Validation
# =============================================================================

# Field name -> kind (or enum class) for salary record values
RECORD_FIELD_TYPES: Dict[str, Any] = {
    "basic_salary": "money",
    "allowances": "money",
    "bonus": "money",
    "overtime": "money",
    "deductions": "money",
    "hourly_rate": "money",
    "hours_worked": "quantity",
    "window_start": "date",
    "window_end": "date",
    "pay_date": "date",
    "payment_date": "date",
    "salary_type": SalaryType,
    "payment_status": PaymentStatus,
    "payment_method": PaymentMethod,
    "period": "text",
    "period_label": "text",
    "notes": "text",
}

# Fields a new record draft may carry
DRAFT_FIELDS = frozenset({
    "salary_type", "period", "period_label", "window_start", "window_end", "pay_date",
    "basic_salary", "allowances", "bonus", "overtime", "deductions",
    "hours_worked", "hourly_rate", "payment_method", "notes",
})

# Fields a confirmed salary update may change on an existing record
AUTHORIZED_EDIT_FIELDS = frozenset({
    "basic_salary", "allowances", "bonus", "overtime", "deductions",
    "hours_worked", "hourly_rate", "pay_date", "payment_date",
    "payment_status", "payment_method", "notes",
})

# Fields that may be edited directly while a record is still pending
PENDING_EDIT_FIELDS = AUTHORIZED_EDIT_FIELDS - {"payment_status", "payment_date"}

EMPLOYEE_PROFILE_FIELDS = frozenset({
    "name", "email", "phone", "designation", "department",
    "joining_date", "base_pay", "bank_details", "address",
})


def _as_naive_utc(now: Optional[datetime]) -> datetime:
    """Normalize a caller-supplied instant to the naive UTC form stored in the database."""
    if now is None:
        return utcnow()
    if now.tzinfo is not None:
        return now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


def _parse_money(value: Any, field_name: str) -> Decimal:
    """Non-negative amount quantized to cents."""
    if isinstance(value, bool):
        raise ValidationError("must be a number", field=field_name)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid amount {value!r}", field=field_name)
    if not amount.is_finite():
        raise ValidationError("must be a finite amount", field=field_name)
    if amount < 0:
        raise ValidationError("must not be negative", field=field_name)
    return quantize_money(amount)


def _parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise ValidationError(f"invalid date {value!r}", field=field_name)


def _parse_enum(enum_cls: Type[Any], value: Any, field_name: str):
    """Accept an enum member, its value ("paid") or its name ("PAID")."""
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for member in enum_cls:
        if text.lower() == member.value or text.upper() == member.name:
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValidationError(f"must be one of: {allowed}", field=field_name)


def _parse_field(field_name: str, value: Any) -> Any:
    kind = RECORD_FIELD_TYPES[field_name]
    if value is None:
        if kind in ("date", "quantity") or field_name == "hourly_rate":
            return None
        if kind == "text":
            return ""
        raise ValidationError("must not be empty", field=field_name)
    if kind in ("money", "quantity"):
        return _parse_money(value, field_name)
    if kind == "date":
        return _parse_date(value, field_name)
    if kind == "text":
        return str(value).strip()
    return _parse_enum(kind, value, field_name)


def normalize_record_fields(values: Dict[str, Any], allowed: frozenset) -> Dict[str, Any]:
    """
    Validate and type a field-level delta for a salary record.

    Raises:
        ValidationError: On unknown fields, bad values, or a caller-supplied total
    """
    if not isinstance(values, dict):
        raise ValidationError("changes must be a mapping")
    if "total_salary" in values:
        raise ValidationError("is derived from the components and cannot be set", field="total_salary")

    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ValidationError(f"cannot be changed here: {', '.join(unknown)}", field=unknown[0])

    return {name: _parse_field(name, value) for name, value in values.items()}


def encode_record_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe form of a typed delta (amounts as strings, dates ISO, enums by value)."""
    encoded = {}
    for name, value in values.items():
        if isinstance(value, Decimal):
            encoded[name] = str(value)
        elif isinstance(value, date):
            encoded[name] = value.isoformat()
        elif isinstance(value, (SalaryType, PaymentStatus, PaymentMethod)):
            encoded[name] = value.value
        else:
            encoded[name] = value
    return encoded


def _check_window(window_start: Optional[date], window_end: Optional[date]) -> None:
    if window_start and window_end and window_start > window_end:
        raise ValidationError("window_start must not be after window_end", field="window_start")


def _record_to_dict(record: SalaryRecord, employee_no: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": record.id,
        "employee_no": employee_no or record.employee.employee_no,
        "salary_type": record.salary_type.value if record.salary_type else None,
        "period": record.period,
        "period_label": record.period_label,
        "window_start": record.window_start,
        "window_end": record.window_end,
        "pay_date": record.pay_date,
        "month": record.month,
        "basic_salary": quantize_money(record.basic_salary),
        "allowances": quantize_money(record.allowances),
        "bonus": quantize_money(record.bonus),
        "overtime": quantize_money(record.overtime),
        "deductions": quantize_money(record.deductions),
        "hours_worked": record.hours_worked,
        "hourly_rate": record.hourly_rate,
        "total_salary": record.total_salary,
        "payment_status": record.payment_status.value,
        "payment_method": record.payment_method.value,
        "payment_date": record.payment_date,
        "notes": record.notes,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _record_sort_key(record: SalaryRecord) -> date:
    """Pay date, else window end, else the end of the legacy month."""
    if record.pay_date:
        return record.pay_date
    if record.window_end:
        return record.window_end
    if record.month and is_month_key(record.month):
        return month_window(record.month)[1]
    return date.min


def _get_employee_or_raise(session: Session, employee_no: str, lock: bool = False) -> Employee:
    if lock:
        employee = EmployeeRepository.get_for_update(session, employee_no)
    else:
        employee = EmployeeRepository.get_by_employee_no(session, employee_no)
    if employee is None:
        raise EmployeeNotFound(employee_no)
    return employee


def _get_record_or_raise(session: Session, employee: Employee, record_id: int) -> SalaryRecord:
    record = SalaryRecordRepository.get_for_employee(session, employee.id, record_id)
    if record is None:
        raise RecordNotFound(employee.employee_no, record_id)
    return record


# =============================================================================
# Employee Service
# =============================================================================

class EmployeeService:
    """
    Employee management service.
    员工管理服务
    """

    MAX_ALLOCATION_ATTEMPTS = 3

    @staticmethod
    def _normalize_profile(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        """Validate profile fields; ``partial`` skips the required-field checks."""
        unknown = sorted(set(data) - EMPLOYEE_PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"cannot be set: {', '.join(unknown)}", field=unknown[0])

        values: Dict[str, Any] = {}
        for name in ("name", "designation", "department"):
            if name in data:
                values[name] = str(data[name] or "").strip()

        if "email" in data:
            values["email"] = str(data["email"] or "").strip().lower()
            if values["email"] and "@" not in values["email"]:
                raise ValidationError("invalid email address", field="email")
        if "phone" in data:
            values["phone"] = str(data["phone"] or "").strip()

        for name in ("name", "email", "phone"):
            if (not partial or name in values) and not values.get(name):
                raise ValidationError("is required", field=name)

        if "base_pay" in data:
            values["base_pay"] = _parse_money(data["base_pay"] or 0, "base_pay")
        if data.get("joining_date") is not None:
            values["joining_date"] = _parse_date(data["joining_date"], "joining_date")
        return values

    @staticmethod
    def _check_contact(session: Session, values: Dict[str, Any], exclude_id: Optional[int] = None) -> None:
        existing = EmployeeRepository.find_by_contact(
            session, values.get("email"), values.get("phone"), exclude_id=exclude_id
        )
        if existing is None:
            return
        if values.get("email") and existing.email == values["email"]:
            raise ValidationError(f"{values['email']} is already registered", field="email")
        raise ValidationError(f"{values.get('phone')} is already registered", field="phone")

    @staticmethod
    def _encrypt_bank_details(bank_details: Optional[Dict[str, Any]]) -> Optional[str]:
        if not bank_details:
            return None
        if not isinstance(bank_details, dict):
            raise ValidationError("must be a mapping", field="bank_details")
        try:
            em = get_encryption_manager()
        except ValueError as e:
            raise ValidationError(f"encryption is not configured: {e}", field="bank_details") from e
        return em.encrypt_json(bank_details)

    @staticmethod
    def _to_dict(employee: Employee, include_sensitive: bool = False) -> Dict[str, Any]:
        result = {
            "id": employee.id,
            "employee_no": employee.employee_no,
            "name": employee.name,
            "email": employee.email,
            "phone": employee.phone,
            "email_verified": employee.email_verified,
            "designation": employee.designation,
            "department": employee.department,
            "joining_date": employee.joining_date,
            "base_pay": quantize_money(employee.base_pay),
            "status": employee.status.value,
            "address": json.loads(employee.address_json) if employee.address_json else None,
            "created_at": employee.created_at,
        }

        if employee.bank_details_encrypted:
            em = get_encryption_manager()
            bank_details = em.decrypt_json(employee.bank_details_encrypted)
            if not include_sensitive:
                bank_details = {
                    key: em.redact_sensitive(str(value)) if value else value
                    for key, value in bank_details.items()
                }
            result["bank_details"] = bank_details
        else:
            result["bank_details"] = None
        return result

    @staticmethod
    def create_employee(
        data: Dict[str, Any],
        actor: str,
        email_verified: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Register a new employee and allocate its identity.

        Args:
            data: Profile fields (name, email, phone, base_pay, ...)
            actor: Authenticated actor registering the employee
            email_verified: Initial verification flag (defaults to AUTO_VERIFY_EMAIL)

        Returns:
            Employee data dictionary

        Raises:
            ValidationError: Bad input or duplicate contact
            IdentityAllocationError: No identity could be reserved
        """
        values = EmployeeService._normalize_profile(data, partial=False)

        bank_details_encrypted = EmployeeService._encrypt_bank_details(data.get("bank_details"))
        if email_verified is None:
            email_verified = get_settings().auto_verify_email

        for attempt in range(1, EmployeeService.MAX_ALLOCATION_ATTEMPTS + 1):
            try:
                with session_scope() as session:
                    EmployeeService._check_contact(session, values)

                    if attempt > 1:
                        IdentityAllocator.resync(session)
                    employee_no = IdentityAllocator.allocate(session)
                    if EmployeeRepository.get_by_employee_no(session, employee_no) is not None:
                        raise AllocationConflict(employee_no)

                    try:
                        with session.begin_nested():
                            employee = EmployeeRepository.create(
                                session,
                                employee_no=employee_no,
                                name=values["name"],
                                email=values["email"],
                                phone=values["phone"],
                                base_pay=values.get("base_pay", Decimal("0.00")),
                                designation=values.get("designation", ""),
                                department=values.get("department", ""),
                                joining_date=values.get("joining_date"),
                                bank_details_encrypted=bank_details_encrypted,
                                address=data.get("address"),
                                email_verified=bool(email_verified),
                            )
                    except IntegrityError:
                        # Contact taken by a concurrent writer, or identity collision
                        EmployeeService._check_contact(session, values)
                        raise AllocationConflict(employee_no)

                    AuditLogRepository.create(
                        session,
                        actor=actor,
                        action="create_employee",
                        result="success",
                        resource_type="employee",
                        resource_id=employee_no,
                        metadata={"attempt": attempt},
                    )
                    result = EmployeeService._to_dict(employee)

                logger.info(
                    "employee_created",
                    extra={"employee_no": result["employee_no"], "actor": actor},
                )
                return result
            except AllocationConflict as e:
                logger.warning(
                    "identity_allocation_conflict",
                    extra={"employee_no": e.employee_no, "attempt": attempt},
                )

        raise IdentityAllocationError(
            f"Identity allocation failed after {EmployeeService.MAX_ALLOCATION_ATTEMPTS} attempts"
        )

    @staticmethod
    def get_employee(employee_no: str, include_sensitive: bool = False) -> Dict[str, Any]:
        """
        Get employee data; bank details are redacted unless ``include_sensitive``.
        """
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            return EmployeeService._to_dict(employee, include_sensitive)

    @staticmethod
    def _salary_summary(employee: Employee, current: str) -> Dict[str, Any]:
        """Paid and pending totals plus the record for the current month."""
        total_paid = Decimal("0")
        pending = Decimal("0")
        current_record = None
        for record in employee.salary_records:
            if record.payment_status == PaymentStatus.PAID:
                total_paid += record.total_salary
            elif record.payment_status == PaymentStatus.PENDING:
                pending += record.total_salary
            if (
                (record.salary_type == SalaryType.MONTHLY and record.period == current)
                or (record.is_legacy and record.month == current)
            ):
                current_record = record

        return {
            "total_paid": quantize_money(total_paid),
            "pending_amount": quantize_money(pending),
            "current_month_salary": (
                _record_to_dict(current_record, employee.employee_no) if current_record else None
            ),
            "total_records": len(employee.salary_records),
        }

    @staticmethod
    def list_employees(
        status: Optional[EmployeeStatus] = None,
        department: Optional[str] = None,
        include_summary: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        List employees (without bank details).

        With ``include_summary`` each entry carries a ``salary_summary`` of
        paid and pending totals, the current month's record and the record
        count.
        """
        current = month_key(_as_naive_utc(now).date())
        with session_scope() as session:
            employees = EmployeeRepository.list_all(session, status=status, department=department)
            result = []
            for emp in employees:
                entry = {
                    "id": emp.id,
                    "employee_no": emp.employee_no,
                    "name": emp.name,
                    "email": emp.email,
                    "email_verified": emp.email_verified,
                    "department": emp.department,
                    "designation": emp.designation,
                    "base_pay": quantize_money(emp.base_pay),
                    "status": emp.status.value,
                }
                if include_summary:
                    entry["salary_summary"] = EmployeeService._salary_summary(emp, current)
                result.append(entry)
            return result

    @staticmethod
    def count_active() -> int:
        """Count active employees."""
        with session_scope() as session:
            return EmployeeRepository.count_active(session)

    @staticmethod
    def update_employee(employee_no: str, data: Dict[str, Any], actor: str) -> Dict[str, Any]:
        """
        Update profile fields.

        Identity, status, salary records and the pending update cannot be
        changed through this path.
        """
        values = EmployeeService._normalize_profile(data, partial=True)
        if not values and "bank_details" not in data and "address" not in data:
            raise ValidationError("no changes supplied")

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)

            if "email" in values or "phone" in values:
                EmployeeService._check_contact(session, values, exclude_id=employee.id)

            # A new address has to be verified again
            email_changed = "email" in values and values["email"] != employee.email
            if email_changed:
                values["email_verified"] = False
                values["email_verification_hash"] = None
                values["email_verification_expires_at"] = None

            if "bank_details" in data:
                values["bank_details_encrypted"] = EmployeeService._encrypt_bank_details(
                    data["bank_details"]
                )
            if "address" in data:
                values["address_json"] = json.dumps(data["address"]) if data["address"] else None

            EmployeeRepository.update(session, employee.id, **values)
            session.refresh(employee)

            AuditLogRepository.create(
                session,
                actor=actor,
                action="update_employee",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata={"fields": sorted(k for k in data), "email_changed": email_changed},
            )
            return EmployeeService._to_dict(employee)

    @staticmethod
    def issue_email_verification(
        employee_no: str,
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> str:
        """
        Issue an email verification token.
        发送邮箱验证 - 数据库只保存令牌哈希

        A new token replaces any outstanding one. Only the SHA-256 digest is
        stored; the plaintext goes back to the caller for delivery.

        Returns:
            The plaintext token

        Raises:
            ValidationError: The address is already verified
        """
        now = _as_naive_utc(now)
        token = generate_verification_token()
        expires_at = now + timedelta(hours=get_settings().email_verification_ttl_hours)

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            if employee.email_verified:
                raise ValidationError("is already verified", field="email")

            employee.email_verification_hash = hash_verification_token(token)
            employee.email_verification_expires_at = expires_at
            session.flush()

            AuditLogRepository.create(
                session,
                actor=actor,
                action="email_verification_issued",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata={"expires_at": expires_at},
            )

        logger.info(
            "email_verification_issued",
            extra={"employee_no": employee_no, "expires_at": expires_at.isoformat()},
        )
        return token

    @staticmethod
    def verify_email(token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Mark the address holding ``token`` verified and consume the token.

        Raises:
            InvalidVerificationToken: Unknown, already used or expired token
        """
        now = _as_naive_utc(now)
        if not token or not str(token).strip():
            raise InvalidVerificationToken("Verification token is required")
        token_hash = hash_verification_token(token)

        with session_scope() as session:
            employee = EmployeeRepository.get_by_verification_hash(session, token_hash)
            if employee is None:
                raise InvalidVerificationToken("Invalid or already used verification token")
            if (
                employee.email_verification_expires_at is None
                or now > employee.email_verification_expires_at
            ):
                raise InvalidVerificationToken("Verification token has expired")

            employee.email_verified = True
            employee.email_verification_hash = None
            employee.email_verification_expires_at = None
            session.flush()

            AuditLogRepository.create(
                session,
                actor=employee.employee_no,
                action="email_verified",
                result="success",
                resource_type="employee",
                resource_id=employee.employee_no,
            )
            result = EmployeeService._to_dict(employee)

        logger.info("email_verified", extra={"employee_no": result["employee_no"]})
        return result

    @staticmethod
    def set_status(employee_no: str, status: EmployeeStatus, actor: str) -> Dict[str, Any]:
        """Change employment status (active / inactive / terminated)."""
        status = _parse_enum(EmployeeStatus, status, "status")

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            old_status = employee.status
            employee.status = status
            session.flush()

            AuditLogRepository.create(
                session,
                actor=actor,
                action="set_employee_status",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata={"from": old_status.value, "to": status.value},
            )
            result = EmployeeService._to_dict(employee)

        logger.info(
            "employee_status_changed",
            extra={"employee_no": employee_no, "from": old_status.value, "to": status.value},
        )
        return result

    @staticmethod
    def terminate_employee(employee_no: str, actor: str) -> Dict[str, Any]:
        """Removal in normal flow is a status transition; the identity stays assigned."""
        return EmployeeService.set_status(employee_no, EmployeeStatus.TERMINATED, actor)

    @staticmethod
    def purge_employee(employee_no: str, actor: str, confirmed: bool = False) -> int:
        """
        Physically delete a duplicate employee with its records.
        删除重复员工 - 需要二次确认

        The identity is never handed out again.

        Returns:
            Number of salary records deleted
        """
        if not confirmed:
            raise ValidationError("purging an employee requires explicit confirmation", field="confirmed")

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            record_count = len(employee.salary_records)
            snapshot = {
                "name": employee.name,
                "email": employee.email,
                "phone": employee.phone,
                "records": record_count,
                "total_paid": str(sum(
                    (r.total_salary for r in employee.salary_records
                     if r.payment_status == PaymentStatus.PAID),
                    Decimal("0.00"),
                )),
            }
            EmployeeRepository.delete(session, employee)

            AuditLogRepository.create(
                session,
                actor=actor,
                action="purge_employee",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata=snapshot,
            )

        logger.warning("employee_purged", extra={"employee_no": employee_no, "actor": actor})
        return record_count


# =============================================================================
# Salary Ledger Service
# =============================================================================

class SalaryLedgerService:
    """
    Salary record ledger service.
    薪资台账服务

    Every write path ends in a flush, and the SalaryRecord flush hook
    recomputes the stored total from the components.
    """

    @staticmethod
    def normalize_draft(draft: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a new-record draft (salary type and pay window are required)."""
        values = normalize_record_fields(draft, DRAFT_FIELDS)
        for required in ("salary_type", "window_start", "window_end"):
            if values.get(required) is None:
                raise ValidationError("is required", field=required)
        _check_window(values["window_start"], values["window_end"])
        return values

    @staticmethod
    def build_record(session: Session, employee: Employee, values: Dict[str, Any]) -> SalaryRecord:
        """
        Append a record built from a normalized draft to the employee's history.
        """
        salary_type = values["salary_type"]
        window_start = values["window_start"]
        window_end = values["window_end"]

        period, period_label = derive_period(salary_type, window_start, window_end)
        supplied_period = values.get("period")
        if supplied_period:
            if salary_type != SalaryType.PROJECT and supplied_period != period:
                raise ValidationError(
                    f"does not match the pay window (expected {period})", field="period"
                )
            if not is_valid_period(salary_type, supplied_period):
                raise ValidationError("invalid period key", field="period")
            period = supplied_period
        if values.get("period_label"):
            period_label = values["period_label"]

        if SalaryRecordRepository.find_by_period(session, employee.id, salary_type, period):
            raise ValidationError(
                f"a {salary_type.value} record for {period} already exists", field="period"
            )

        hours_worked = values.get("hours_worked")
        hourly_rate = values.get("hourly_rate")
        basic_salary = values.get("basic_salary")
        if basic_salary is None:
            if salary_type == SalaryType.HOURLY and hours_worked is not None and hourly_rate is not None:
                basic_salary = quantize_money(hours_worked * hourly_rate)
            else:
                basic_salary = quantize_money(employee.base_pay)

        return SalaryRecordRepository.create(
            session,
            employee,
            salary_type=salary_type,
            period=period,
            period_label=period_label,
            window_start=window_start,
            window_end=window_end,
            pay_date=values.get("pay_date") or window_end,
            basic_salary=basic_salary,
            allowances=values.get("allowances", Decimal("0.00")),
            bonus=values.get("bonus", Decimal("0.00")),
            overtime=values.get("overtime", Decimal("0.00")),
            deductions=values.get("deductions", Decimal("0.00")),
            payment_method=values.get("payment_method", PaymentMethod.BANK_TRANSFER),
            notes=values.get("notes", ""),
            hours_worked=hours_worked,
            hourly_rate=hourly_rate,
        )

    @staticmethod
    def apply_changes(record: SalaryRecord, values: Dict[str, Any], now: datetime) -> None:
        """Apply a typed delta and recompute the total."""
        for name, value in values.items():
            setattr(record, name, value)

        if values.get("payment_status") == PaymentStatus.PAID and record.payment_date is None:
            record.payment_date = now.date()

        _check_window(record.window_start, record.window_end)
        record.recompute_total()

    @staticmethod
    def create_record(employee_no: str, draft: Dict[str, Any], actor: str = "system") -> Dict[str, Any]:
        """
        Create a salary record for an employee.

        Args:
            employee_no: Employee identity
            draft: salary_type, window_start, window_end and optional components
            actor: Authenticated actor

        Returns:
            The stored record

        Raises:
            ValidationError: Negative component, inverted window, duplicate period
            EmployeeNotFound: Unknown identity
        """
        values = SalaryLedgerService.normalize_draft(draft)

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            record = SalaryLedgerService._create_in_session(session, employee, values, actor)
            result = _record_to_dict(record, employee_no)

        logger.info(
            "salary_record_created",
            extra={"employee_no": employee_no, "record_id": result["id"], "period": result["period"]},
        )
        return result

    @staticmethod
    def _create_in_session(
        session: Session,
        employee: Employee,
        values: Dict[str, Any],
        actor: str,
    ) -> SalaryRecord:
        """Build and audit a record inside the caller's transaction."""
        record = SalaryLedgerService.build_record(session, employee, values)

        AuditLogRepository.create(
            session,
            actor=actor,
            action="create_salary_record",
            result="success",
            resource_type="salary_record",
            resource_id=record.id,
            metadata={
                "employee_no": employee.employee_no,
                "period": record.period,
                "total_salary": record.total_salary,
            },
        )
        return record

    @staticmethod
    def _apply_transition(
        session: Session,
        employee: Employee,
        record: SalaryRecord,
        to_status: PaymentStatus,
        actor: str,
        payment_date: Optional[date] = None,
        payment_method: Optional[PaymentMethod] = None,
    ) -> None:
        """Move a record along the payment status machine inside the caller's transaction."""
        from_status = record.payment_status
        PaymentStatusMachine.validate_transition(from_status, to_status)

        record.payment_status = to_status
        if to_status == PaymentStatus.PAID:
            record.payment_date = payment_date or utcnow().date()
            if payment_method is not None:
                record.payment_method = payment_method
        session.flush()

        AuditLogRepository.create(
            session,
            actor=actor,
            action=f"mark_{to_status.value}",
            result="success",
            resource_type="salary_record",
            resource_id=record.id,
            metadata={"employee_no": employee.employee_no, "from": from_status.value},
        )

    @staticmethod
    def _transition(
        employee_no: str,
        record_id: int,
        to_status: PaymentStatus,
        actor: str,
        payment_date: Optional[date] = None,
        payment_method: Optional[PaymentMethod] = None,
    ) -> Dict[str, Any]:
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            record = _get_record_or_raise(session, employee, record_id)
            SalaryLedgerService._apply_transition(
                session, employee, record, to_status, actor, payment_date, payment_method
            )
            result = _record_to_dict(record, employee_no)

        logger.info(
            "salary_record_status_changed",
            extra={"employee_no": employee_no, "record_id": record_id, "to": to_status.value},
        )
        return result

    @staticmethod
    def mark_paid(
        employee_no: str,
        record_id: int,
        payment_date: Optional[date] = None,
        payment_method: Optional[PaymentMethod] = None,
        actor: str = "system",
    ) -> Dict[str, Any]:
        """
        Mark a pending record paid.

        Raises:
            InvalidStateTransition: The record is not pending
        """
        if payment_date is not None:
            payment_date = _parse_date(payment_date, "payment_date")
        if payment_method is not None:
            payment_method = _parse_enum(PaymentMethod, payment_method, "payment_method")
        return SalaryLedgerService._transition(
            employee_no, record_id, PaymentStatus.PAID, actor, payment_date, payment_method
        )

    @staticmethod
    def mark_cancelled(employee_no: str, record_id: int, actor: str = "system") -> Dict[str, Any]:
        """
        Cancel a pending record.

        Raises:
            InvalidStateTransition: The record is not pending
        """
        return SalaryLedgerService._transition(
            employee_no, record_id, PaymentStatus.CANCELLED, actor
        )

    @staticmethod
    def amend_pending_record(
        employee_no: str,
        record_id: int,
        changes: Dict[str, Any],
        actor: str = "system",
    ) -> Dict[str, Any]:
        """
        Edit a record that is still pending.

        Records that are paid or cancelled can only change through
        ``UpdateAuthorizationService``.
        """
        values = normalize_record_fields(changes, PENDING_EDIT_FIELDS)
        if not values:
            raise ValidationError("no changes supplied")

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            record = _get_record_or_raise(session, employee, record_id)

            if not PaymentStatusMachine.is_editable(record.payment_status):
                raise InvalidStateTransition(
                    record.payment_status.value,
                    record.payment_status.value,
                    "only pending records can be edited directly; request a salary update",
                )

            SalaryLedgerService.apply_changes(record, values, utcnow())
            session.flush()

            AuditLogRepository.create(
                session,
                actor=actor,
                action="amend_salary_record",
                result="success",
                resource_type="salary_record",
                resource_id=record.id,
                metadata={"employee_no": employee_no, "changes": encode_record_fields(values)},
            )
            return _record_to_dict(record, employee_no)

    @staticmethod
    def get_record(employee_no: str, record_id: int) -> Dict[str, Any]:
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            return _record_to_dict(_get_record_or_raise(session, employee, record_id), employee_no)

    @staticmethod
    def list_records(employee_no: str, newest_first: bool = True) -> List[Dict[str, Any]]:
        """Records sorted by pay date (falling back to window end, then legacy month)."""
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            records = sorted(
                SalaryRecordRepository.list_by_employee(session, employee.id),
                key=lambda r: (_record_sort_key(r), r.id),
                reverse=newest_first,
            )
            return [_record_to_dict(r, employee_no) for r in records]

    @staticmethod
    def current_period_record(employee_no: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        The monthly record covering ``now``, legacy month-only rows included.
        """
        now = _as_naive_utc(now)
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            record = SalaryRecordRepository.find_by_period(
                session, employee.id, SalaryType.MONTHLY, month_key(now.date())
            )
            return _record_to_dict(record, employee_no) if record else None

    @staticmethod
    def _sum_by_status(employee_no: str, status: PaymentStatus) -> Decimal:
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            records = SalaryRecordRepository.list_by_status(session, employee.id, status)
            return quantize_money(sum((r.total_salary for r in records), Decimal("0")))

    @staticmethod
    def total_paid(employee_no: str) -> Decimal:
        """Sum of totals over paid records."""
        return SalaryLedgerService._sum_by_status(employee_no, PaymentStatus.PAID)

    @staticmethod
    def total_pending(employee_no: str) -> Decimal:
        """Sum of totals over pending records."""
        return SalaryLedgerService._sum_by_status(employee_no, PaymentStatus.PENDING)

    @staticmethod
    def salary_summary(now: Optional[datetime] = None) -> SalarySummary:
        """
        Totals across active employees.
        薪资汇总 - 在职员工
        """
        now = _as_naive_utc(now)
        current = month_key(now.date())
        total_paid = Decimal("0")
        total_pending = Decimal("0")
        current_paid = Decimal("0")

        with session_scope() as session:
            employees = EmployeeRepository.list_active(session)
            for employee in employees:
                for record in employee.salary_records:
                    if record.payment_status == PaymentStatus.PAID:
                        total_paid += record.total_salary
                        in_current = (
                            (record.salary_type == SalaryType.MONTHLY and record.period == current)
                            or (record.is_legacy and record.month == current)
                        )
                        if in_current:
                            current_paid += record.total_salary
                    elif record.payment_status == PaymentStatus.PENDING:
                        total_pending += record.total_salary

            return SalarySummary(
                total_employees=len(employees),
                total_paid=quantize_money(total_paid),
                total_pending=quantize_money(total_pending),
                current_period=current,
                current_period_paid=quantize_money(current_paid),
            )


# =============================================================================
# Update Authorization Service
# =============================================================================

class UpdateAuthorizationService:
    """
    OTP-gated salary update workflow.
    薪资修改验证码确认流程

    request_update stages a delta and returns a one-time code for the caller
    to deliver; confirm_update applies the delta only if the code matches
    before the challenge expires. At most one request exists per employee,
    and a new request supersedes the previous one.
    """

    @staticmethod
    def _state_of(request: Optional[UpdateRequest], now: datetime) -> UpdateState:
        """Workflow state of a stored request (or its absence) at ``now``."""
        if request is None:
            return UpdateState.NONE
        return UpdateState.EXPIRED if request.is_expired(now) else UpdateState.REQUESTED

    @staticmethod
    def _normalize_changes(proposed_changes: Dict[str, Any], record_id: Optional[int]) -> Dict[str, Any]:
        if record_id is None:
            return SalaryLedgerService.normalize_draft(proposed_changes)
        values = normalize_record_fields(proposed_changes, AUTHORIZED_EDIT_FIELDS)
        if not values:
            raise ValidationError("no changes supplied")
        return values

    @staticmethod
    def request_update(
        employee_no: str,
        proposed_changes: Dict[str, Any],
        requested_by: str,
        record_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Stage a salary update and issue its challenge.

        Args:
            employee_no: Employee identity
            proposed_changes: Field-level delta (or a full draft when record_id is None)
            requested_by: Actor proposing the change
            record_id: Target record; None means "create a new record"
            now: Current instant (defaults to utcnow)

        Returns:
            The plaintext challenge code, for out-of-band delivery

        Raises:
            EmailNotVerified: The code has no verified address to go to
        """
        if not requested_by:
            raise ValidationError("is required", field="requested_by")
        now = _as_naive_utc(now)
        values = UpdateAuthorizationService._normalize_changes(proposed_changes, record_id)

        hasher = get_challenge_hasher()
        code = hasher.generate_code()
        code_hash = hasher.hash_code(code)
        expires_at = now + timedelta(minutes=get_settings().otp_ttl_minutes)

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            if not employee.email_verified:
                raise EmailNotVerified(employee_no)
            if record_id is not None:
                _get_record_or_raise(session, employee, record_id)

            previous = employee.pending_update
            state = UpdateAuthorizationService._state_of(previous, now)
            superseded = state == UpdateState.REQUESTED
            if previous is not None:
                # A live challenge is superseded; an expired one is just discarded
                UpdateStateMachine.validate_transition(
                    state, UpdateState.SUPERSEDED if superseded else UpdateState.NONE
                )
                AuditLogRepository.create(
                    session,
                    actor=requested_by,
                    action="salary_update_superseded" if superseded else "salary_update_expired",
                    result="success",
                    resource_type="employee",
                    resource_id=employee_no,
                    metadata={"record_id": previous.target_record_id},
                )
                UpdateRequestRepository.discard(session, employee)
                state = UpdateState.NONE

            UpdateStateMachine.validate_transition(state, UpdateState.REQUESTED)
            UpdateRequestRepository.create(
                session,
                employee,
                target_record_id=record_id,
                proposed_changes=encode_record_fields(values),
                requested_by=requested_by,
                requested_at=now,
                challenge_hash=code_hash,
                challenge_expires_at=expires_at,
            )

            AuditLogRepository.create(
                session,
                actor=requested_by,
                action="salary_update_requested",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata={
                    "record_id": record_id,
                    "fields": sorted(values),
                    "expires_at": expires_at,
                },
            )

        logger.info(
            "salary_update_requested",
            extra={
                "employee_no": employee_no,
                "record_id": record_id,
                "superseded": superseded,
                "expires_at": expires_at.isoformat(),
            },
        )
        return code

    @staticmethod
    def confirm_update(employee_no: str, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Apply the staged update if ``code`` matches before expiry.

        The request is consumed in the same transaction that applies the
        change, with the employee row locked, so a challenge confirms once.

        Returns:
            The updated (or created) record

        Raises:
            TooManyAttempts: Too many invalid codes recently
            NoPendingUpdate: Nothing to confirm
            ExpiredChallenge: The challenge expired; the request is discarded
            InvalidCode: Wrong code; the failed attempt is recorded
        """
        now = _as_naive_utc(now)
        limiter = get_rate_limiter()

        is_locked, retry_after = limiter.is_locked(employee_no)
        if is_locked:
            logger.warning(
                "salary_update_locked_out",
                extra={"employee_no": employee_no, "retry_after": retry_after},
            )
            raise TooManyAttempts(employee_no, retry_after)

        hasher = get_challenge_hasher()
        outcome: Optional[LedgerError] = None
        result: Dict[str, Any] = {}

        # Failure outcomes are raised after commit so that expiry and
        # attempt counts persist.
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            request = UpdateRequestRepository.get_by_employee(session, employee.id)
            if request is None:
                raise NoPendingUpdate(employee_no)
            requested_by = request.requested_by
            state = UpdateAuthorizationService._state_of(request, now)

            if state == UpdateState.EXPIRED:
                UpdateStateMachine.validate_transition(state, UpdateState.NONE)
                expired_at = request.challenge_expires_at
                UpdateRequestRepository.discard(session, employee)
                AuditLogRepository.create(
                    session,
                    actor=requested_by,
                    action="salary_update_expired",
                    result="failure",
                    resource_type="employee",
                    resource_id=employee_no,
                    metadata={"expired_at": expired_at},
                )
                outcome = ExpiredChallenge(employee_no, expired_at)

            elif not hasher.verify_code(code, request.challenge_hash):
                attempts = UpdateRequestRepository.increment_failed_attempts(session, request)
                remaining = limiter.record_attempt(employee_no, success=False)
                AuditLogRepository.create(
                    session,
                    actor=requested_by,
                    action="salary_update_invalid_code",
                    result="failure",
                    resource_type="employee",
                    resource_id=employee_no,
                    metadata={"attempts": attempts},
                )
                outcome = InvalidCode(employee_no, attempts, remaining)

            else:
                UpdateStateMachine.validate_transition(state, UpdateState.CONFIRMED)
                result = UpdateAuthorizationService._apply(session, employee, request, now)

        if outcome is not None:
            logger.warning(
                "salary_update_rejected",
                extra={"employee_no": employee_no, "reason": type(outcome).__name__},
            )
            raise outcome

        limiter.record_attempt(employee_no, success=True)
        logger.info(
            "salary_update_confirmed",
            extra={"employee_no": employee_no, "record_id": result["id"]},
        )
        return result

    @staticmethod
    def _apply(session: Session, employee: Employee, request: UpdateRequest, now: datetime) -> Dict[str, Any]:
        """Apply a confirmed request and consume it."""
        raw_changes = UpdateRequestRepository.decode_changes(request)
        record_id = request.target_record_id
        requested_by = request.requested_by

        if record_id is None:
            values = SalaryLedgerService.normalize_draft(raw_changes)
            record = SalaryLedgerService.build_record(session, employee, values)
        else:
            values = normalize_record_fields(raw_changes, AUTHORIZED_EDIT_FIELDS)
            record = _get_record_or_raise(session, employee, record_id)
            if migrate_record(record):
                logger.info(
                    "legacy_record_migrated_on_update",
                    extra={"employee_no": employee.employee_no, "record_id": record.id},
                )
            SalaryLedgerService.apply_changes(record, values, now)

        UpdateRequestRepository.discard(session, employee)
        session.flush()

        AuditLogRepository.create(
            session,
            actor=requested_by,
            action="salary_update_confirmed",
            result="success",
            resource_type="salary_record",
            resource_id=record.id,
            metadata={
                "employee_no": employee.employee_no,
                "changes": raw_changes,
                "total_salary": record.total_salary,
            },
        )
        return _record_to_dict(record, employee.employee_no)

    @staticmethod
    def cancel_update(employee_no: str, actor: str = "system", now: Optional[datetime] = None) -> bool:
        """
        Discard the pending update, expired or not. Idempotent.

        Returns:
            True if a request was discarded
        """
        now = _as_naive_utc(now)
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            state = UpdateAuthorizationService._state_of(employee.pending_update, now)
            if state == UpdateState.NONE:
                return False

            UpdateStateMachine.validate_transition(state, UpdateState.NONE)
            UpdateRequestRepository.discard(session, employee)
            AuditLogRepository.create(
                session,
                actor=actor,
                action="salary_update_cancelled",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata={"state": state.value},
            )

        logger.info("salary_update_cancelled", extra={"employee_no": employee_no, "actor": actor})
        return True

    @staticmethod
    def get_update_state(employee_no: str, now: Optional[datetime] = None) -> UpdateState:
        """
        NONE, REQUESTED, or EXPIRED for a request past its deadline that has
        not been discarded yet.
        """
        now = _as_naive_utc(now)
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            request = UpdateRequestRepository.get_by_employee(session, employee.id)
            return UpdateAuthorizationService._state_of(request, now)

    @staticmethod
    def get_pending_update(employee_no: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Pending request details; never includes the code or its hash."""
        now = _as_naive_utc(now)
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no)
            request = UpdateRequestRepository.get_by_employee(session, employee.id)
            if request is None:
                return None
            return {
                "employee_no": employee_no,
                "target_record_id": request.target_record_id,
                "proposed_changes": UpdateRequestRepository.decode_changes(request),
                "requested_by": request.requested_by,
                "requested_at": request.requested_at,
                "expires_at": request.challenge_expires_at,
                "failed_attempts": request.failed_attempts,
                "state": UpdateAuthorizationService._state_of(request, now).value,
            }

    @staticmethod
    def discard_expired_requests(now: Optional[datetime] = None, actor: str = "system") -> int:
        """Periodic cleanup; expiry is otherwise handled lazily at confirmation."""
        now = _as_naive_utc(now)
        with session_scope() as session:
            count = UpdateRequestRepository.delete_expired(session, now)
            if count:
                AuditLogRepository.create(
                    session,
                    actor=actor,
                    action="discard_expired_updates",
                    result="success",
                    metadata={"count": count},
                )

        if count:
            logger.info("expired_updates_discarded", extra={"count": count})
        return count


# =============================================================================
# Import Service
# =============================================================================

class ImportService:
    """
    Data import service.
    数据导入服务
    """

    # Column name mappings (Chinese -> English)
    SALARY_RECORD_COLUMNS = {
        "员工编号": "employee_no",
        "薪资类型": "salary_type",
        "月份": "month",
        "开始日期": "window_start",
        "结束日期": "window_end",
        "期间": "period",
        "发薪日期": "pay_date",
        "基本工资": "basic_salary",
        "津贴": "allowances",
        "奖金": "bonus",
        "加班费": "overtime",
        "扣款": "deductions",
        "工时": "hours_worked",
        "时薪": "hourly_rate",
        "支付方式": "payment_method",
        "支付状态": "payment_status",
        "支付日期": "payment_date",
        "备注": "notes",
    }

    LEGACY_FIELDS = frozenset({
        "basic_salary", "allowances", "bonus", "overtime", "deductions",
        "payment_status", "payment_method", "payment_date", "pay_date", "notes",
    })

    @staticmethod
    def _rename_columns(df: pd.DataFrame, mapping: Dict[str, str]) -> pd.DataFrame:
        """Rename columns using mapping (supports both Chinese and English)."""
        return df.rename(columns={col: mapping[col] for col in df.columns if col in mapping})

    @staticmethod
    def _row_values(row: pd.Series) -> Dict[str, Any]:
        values = {}
        for name, value in row.items():
            if name == "employee_no" or not pd.notna(value):
                continue
            if isinstance(value, str) and not value.strip():
                continue
            values[name] = value
        return values

    @staticmethod
    def _import_legacy_row(employee_no: str, month: str, values: Dict[str, Any]) -> None:
        """Store a month-only row as-is for a later migration pass."""
        typed = normalize_record_fields(
            {k: v for k, v in values.items() if k in ImportService.LEGACY_FIELDS},
            ImportService.LEGACY_FIELDS,
        )
        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            if SalaryRecordRepository.find_by_period(session, employee.id, SalaryType.MONTHLY, month):
                raise ValidationError(f"a record for {month} already exists", field="month")
            SalaryRecordRepository.create_legacy(
                session,
                employee,
                month=month,
                basic_salary=typed.get("basic_salary", quantize_money(employee.base_pay)),
                allowances=typed.get("allowances", Decimal("0.00")),
                bonus=typed.get("bonus", Decimal("0.00")),
                overtime=typed.get("overtime", Decimal("0.00")),
                deductions=typed.get("deductions", Decimal("0.00")),
                payment_status=typed.get("payment_status", PaymentStatus.PENDING),
                payment_method=typed.get("payment_method", PaymentMethod.BANK_TRANSFER),
                payment_date=typed.get("payment_date"),
                pay_date=typed.get("pay_date"),
                notes=typed.get("notes", ""),
            )

    @staticmethod
    def _import_record_row(employee_no: str, values: Dict[str, Any], actor: str) -> None:
        """
        Create a record and settle it through the ordinary status transitions.

        Both steps share one transaction; a row is stored settled or not at all.
        """
        status = values.pop("payment_status", None)
        payment_date = values.pop("payment_date", None)
        status = _parse_enum(PaymentStatus, status, "payment_status") if status else PaymentStatus.PENDING
        if payment_date is not None:
            payment_date = _parse_date(payment_date, "payment_date")
        draft = SalaryLedgerService.normalize_draft(values)

        with session_scope() as session:
            employee = _get_employee_or_raise(session, employee_no, lock=True)
            record = SalaryLedgerService._create_in_session(session, employee, draft, actor)
            if status != PaymentStatus.PENDING:
                SalaryLedgerService._apply_transition(
                    session, employee, record, status, actor, payment_date=payment_date
                )

    @staticmethod
    def import_salary_records(df: pd.DataFrame, actor: str) -> ImportResult:
        """
        Import salary records from a DataFrame.

        Rows carrying ``month`` but no ``salary_type`` are stored in the legacy
        shape; run ``MigrationService`` afterwards to upgrade them. Each row is
        its own transaction, so one bad row does not block the rest.
        """
        df = ImportService._rename_columns(df, ImportService.SALARY_RECORD_COLUMNS)
        result = ImportResult()

        for idx, row in df.iterrows():
            employee_no = str(row.get("employee_no", "")).strip()
            values = ImportService._row_values(row)
            try:
                if not employee_no or employee_no == "nan":
                    raise ValidationError("is required", field="employee_no")

                month = str(values.pop("month", "")).strip()
                if month and "salary_type" not in values:
                    ImportService._import_legacy_row(employee_no, month, values)
                    result.legacy += 1
                else:
                    ImportService._import_record_row(employee_no, values, actor)
                result.imported += 1
            except LedgerError as e:
                result.failed += 1
                result.errors.append(f"行 {idx + 2}: {e}")

        with session_scope() as session:
            AuditLogRepository.create(
                session,
                actor=actor,
                action="import_salary_records",
                result="success" if result.failed == 0 else "failure",
                metadata={
                    "imported": result.imported,
                    "legacy": result.legacy,
                    "failed": result.failed,
                },
            )

        logger.info(
            "salary_records_imported",
            extra={"imported": result.imported, "legacy": result.legacy, "failed": result.failed},
        )
        return result


# =============================================================================
# Export Service
# =============================================================================

class ExportService:
    """
    Report export service.
    报表导出服务
    """

    @staticmethod
    def _calculate_file_hash(file_path: str) -> str:
        """Calculate SHA-256 hash of a file."""
        sha256_hash = hashlib.sha256()
        with open(file_path, "rb") as f:
            for byte_block in iter(lambda: f.read(4096), b""):
                sha256_hash.update(byte_block)
        return sha256_hash.hexdigest()

    @staticmethod
    def _write_excel(df: pd.DataFrame, output_path: str, sheet_name: str) -> str:
        df = sanitize_dataframe_for_export(df)
        df.to_excel(output_path, index=False, sheet_name=sheet_name, engine="openpyxl")
        return ExportService._calculate_file_hash(output_path)

    @staticmethod
    def export_salary_records(employee_no: str, output_path: str, actor: str) -> Dict[str, Any]:
        """
        Export one employee's salary history to Excel.

        Returns:
            Dict with path, row count and SHA-256 of the written file
        """
        records = SalaryLedgerService.list_records(employee_no, newest_first=False)

        data = [
            {
                "Employee No": r["employee_no"],
                "Salary Type": r["salary_type"] or "",
                "Period": r["period"] or r["month"] or "",
                "Period Label": r["period_label"] or "",
                "Window Start": r["window_start"],
                "Window End": r["window_end"],
                "Pay Date": r["pay_date"],
                "Basic Salary": float(r["basic_salary"]),
                "Allowances": float(r["allowances"]),
                "Bonus": float(r["bonus"]),
                "Overtime": float(r["overtime"]),
                "Deductions": float(r["deductions"]),
                "Total Salary": float(r["total_salary"]),
                "Payment Status": r["payment_status"],
                "Payment Method": r["payment_method"],
                "Payment Date": r["payment_date"],
                "Notes": r["notes"],
            }
            for r in records
        ]
        file_hash = ExportService._write_excel(pd.DataFrame(data), output_path, "Salary Records")

        with session_scope() as session:
            AuditLogRepository.create(
                session,
                actor=actor,
                action="export_salary_records",
                result="success",
                resource_type="employee",
                resource_id=employee_no,
                metadata={"path": output_path, "rows": len(data), "sha256": file_hash},
            )

        logger.info(
            "salary_records_exported",
            extra={"employee_no": employee_no, "rows": len(data), "sha256": file_hash},
        )
        return {"path": output_path, "rows": len(data), "sha256": file_hash}

    @staticmethod
    def export_salary_summary(output_path: str, actor: str) -> Dict[str, Any]:
        """Export per-employee paid and pending totals to Excel."""
        data = []
        with session_scope() as session:
            for employee in EmployeeRepository.list_all(session):
                paid = Decimal("0")
                pending = Decimal("0")
                for record in employee.salary_records:
                    if record.payment_status == PaymentStatus.PAID:
                        paid += record.total_salary
                    elif record.payment_status == PaymentStatus.PENDING:
                        pending += record.total_salary
                data.append({
                    "Employee No": employee.employee_no,
                    "Name": employee.name,
                    "Department": employee.department,
                    "Designation": employee.designation,
                    "Status": employee.status.value,
                    "Records": len(employee.salary_records),
                    "Total Paid": float(quantize_money(paid)),
                    "Total Pending": float(quantize_money(pending)),
                })

        file_hash = ExportService._write_excel(pd.DataFrame(data), output_path, "Salary Summary")

        with session_scope() as session:
            AuditLogRepository.create(
                session,
                actor=actor,
                action="export_salary_summary",
                result="success",
                metadata={"path": output_path, "rows": len(data), "sha256": file_hash},
            )

        logger.info("salary_summary_exported", extra={"rows": len(data), "sha256": file_hash})
        return {"path": output_path, "rows": len(data), "sha256": file_hash}


# =============================================================================
# System Service
# =============================================================================

class SystemService:
    """
    System management service.
    系统管理服务
    """

    @staticmethod
    def initialize(db_path: Optional[str] = None) -> None:
        """Open the database and create any missing tables."""
        engine = init_database(db_path)
        create_all_tables(engine)

    @staticmethod
    def get_audit_logs(
        limit: int = 100,
        offset: int = 0,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Get audit logs with filters, newest first."""
        with session_scope() as session:
            logs = AuditLogRepository.list_all(
                session,
                limit=limit,
                offset=offset,
                actor=actor,
                action=action,
                resource_id=resource_id,
                start_date=start_date,
                end_date=end_date,
            )

            return [
                {
                    "id": log.id,
                    "actor": log.actor,
                    "action": log.action,
                    "resource_type": log.resource_type,
                    "resource_id": log.resource_id,
                    "result": log.result,
                    "metadata": json.loads(log.metadata_json) if log.metadata_json else None,
                    "created_at": log.created_at,
                }
                for log in logs
            ]
