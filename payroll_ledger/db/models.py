"""
Database Models - 数据库模型
SQLAlchemy ORM models for the payroll record ledger.
"""

import enum
from datetime import datetime, date, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List

from sqlalchemy import (
    Boolean, Integer, BigInteger, String, Text, Date, DateTime,
    Numeric, Enum, ForeignKey, Index, UniqueConstraint, event
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


MONEY_QUANTUM = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def quantize_money(value) -> Decimal:
    """量化金额到2位小数"""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Enums
# =============================================================================

class EmployeeStatus(enum.Enum):
    """Employee status enumeration."""
    ACTIVE = "active"            # 在职
    INACTIVE = "inactive"        # 停用
    TERMINATED = "terminated"    # 离职


class SalaryType(enum.Enum):
    """Pay interval a salary record covers."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    PROJECT = "project"
    HOURLY = "hourly"


class PaymentStatus(enum.Enum):
    """Salary record payment status enumeration."""
    PENDING = "pending"          # 待发放
    PAID = "paid"                # 已发放
    CANCELLED = "cancelled"      # 已取消


class PaymentMethod(enum.Enum):
    """Payment method enumeration."""
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CHEQUE = "cheque"
    UPI = "upi"


# =============================================================================
# Models
# =============================================================================

class Employee(Base):
    """
    Employee model - 员工表
    One row per registered employee; ``employee_no`` is the stable identity.
    """
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_no: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Contact (normalized before storage)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)

    # Email verification; challenge codes only go to a verified address
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_verification_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    email_verification_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    designation: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    department: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    joining_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Default basic salary for new salary records
    base_pay: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    # Encrypted bank details (Fernet token of a JSON object)
    bank_details_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[EmployeeStatus] = mapped_column(Enum(EmployeeStatus), default=EmployeeStatus.ACTIVE)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    salary_records: Mapped[List["SalaryRecord"]] = relationship(
        back_populates="employee",
        order_by="SalaryRecord.id",
        cascade="all, delete-orphan",
    )
    pending_update: Mapped[Optional["UpdateRequest"]] = relationship(
        back_populates="employee",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_employee_status", "status"),
        Index("idx_employee_department", "department"),
    )

    def __repr__(self):
        return f"<Employee(id={self.id}, no='{self.employee_no}', name='{self.name}')>"


def compute_total(
    basic_salary: Optional[Decimal],
    allowances: Optional[Decimal],
    bonus: Optional[Decimal],
    overtime: Optional[Decimal],
    deductions: Optional[Decimal],
) -> Decimal:
    """total = basic + allowances + bonus + overtime - deductions"""
    return quantize_money(
        quantize_money(basic_salary)
        + quantize_money(allowances)
        + quantize_money(bonus)
        + quantize_money(overtime)
        - quantize_money(deductions)
    )


class SalaryRecord(Base):
    """
    Salary Record model - 工资记录表
    One pay interval for one employee. ``total_salary`` is derived from the
    components and cannot be assigned.

    Legacy rows (created before pay intervals existed) carry only ``month``;
    ``salary_type``/``period``/window columns are NULL until migrated.
    """
    __tablename__ = "salary_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id"), nullable=False)

    # Pay interval
    salary_type: Mapped[Optional[SalaryType]] = mapped_column(Enum(SalaryType), nullable=True)
    period: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    period_label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    window_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    window_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    pay_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Legacy shape: "2024-01"
    month: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Components (non-negative; deductions are a magnitude)
    basic_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    allowances: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    bonus: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    overtime: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    deductions: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    # Hourly records
    hours_worked: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Derived; written only by recompute_total()
    stored_total: Mapped[Decimal] = mapped_column("total_salary", Numeric(12, 2), nullable=False, default=0)

    # Payment
    payment_status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), default=PaymentStatus.PENDING)
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), default=PaymentMethod.BANK_TRANSFER)
    payment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    employee: Mapped["Employee"] = relationship(back_populates="salary_records")

    __table_args__ = (
        UniqueConstraint("employee_id", "salary_type", "period", name="uq_salary_record_period"),
        Index("idx_salary_record_employee", "employee_id"),
        Index("idx_salary_record_status", "payment_status"),
    )

    @property
    def total_salary(self) -> Decimal:
        return compute_total(
            self.basic_salary, self.allowances, self.bonus, self.overtime, self.deductions
        )

    @property
    def is_legacy(self) -> bool:
        return self.salary_type is None and bool(self.month)

    def recompute_total(self) -> Decimal:
        """Write the derived total into the stored column."""
        self.stored_total = self.total_salary
        return self.stored_total

    def __repr__(self):
        return (
            f"<SalaryRecord(id={self.id}, employee_id={self.employee_id}, "
            f"period='{self.period or self.month}', total={self.stored_total})>"
        )


@event.listens_for(SalaryRecord, "before_insert")
@event.listens_for(SalaryRecord, "before_update")
def _recompute_total_before_flush(mapper, connection, target: SalaryRecord) -> None:
    # Last step before any row reaches the database.
    target.recompute_total()


class UpdateRequest(Base):
    """
    Update Request model - 待确认修改表
    The single in-flight, OTP-gated edit for an employee's salary data.
    """
    __tablename__ = "update_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id"), unique=True, nullable=False)

    # NULL means "create a new record" on confirmation
    target_record_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    proposed_changes_json: Mapped[str] = mapped_column(Text, nullable=False)

    requested_by: Mapped[str] = mapped_column(String(100), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Argon2 hash of the code, never the code itself
    challenge_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    challenge_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    employee: Mapped["Employee"] = relationship(back_populates="pending_update")

    __table_args__ = (
        Index("idx_update_request_expires", "challenge_expires_at"),
    )

    def is_expired(self, now: datetime) -> bool:
        return now > self.challenge_expires_at

    def __repr__(self):
        return (
            f"<UpdateRequest(employee_id={self.employee_id}, "
            f"target={self.target_record_id}, expires={self.challenge_expires_at})>"
        )


class IdentityCounter(Base):
    """
    Identity Counter model - 编号计数器表
    Locked counter row; the only source of the next employee number.
    """
    __tablename__ = "identity_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self):
        return f"<IdentityCounter(name='{self.name}', value={self.current_value})>"


class AuditLog(Base):
    """
    Audit Log model - 审计日志表
    Stores all sensitive operations for compliance.
    """
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Actor information
    actor: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Result
    result: Mapped[str] = mapped_column(String(20), nullable=False, default="success")  # success, failure, error

    # Additional metadata (JSON)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamp (cannot be modified)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_created", "created_at"),
        Index("idx_audit_actor_action", "actor", "action"),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, actor='{self.actor}', action='{self.action}')>"
