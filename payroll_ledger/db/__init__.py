"""
Database module - 数据库模块
Provides ORM models, repositories, and session management.
"""

from .session import (
    init_database,
    create_all_tables,
    session_scope,
    get_engine,
    close_engine,
)
from .models import (
    Base,
    Employee,
    EmployeeStatus,
    SalaryRecord,
    SalaryType,
    PaymentStatus,
    PaymentMethod,
    UpdateRequest,
    IdentityCounter,
    AuditLog,
    compute_total,
    quantize_money,
    utcnow,
)
from .repositories import (
    EmployeeRepository,
    SalaryRecordRepository,
    UpdateRequestRepository,
    AuditLogRepository,
)

__all__ = [
    # Session
    "init_database",
    "create_all_tables",
    "session_scope",
    "get_engine",
    "close_engine",
    # Models
    "Base",
    "Employee",
    "EmployeeStatus",
    "SalaryRecord",
    "SalaryType",
    "PaymentStatus",
    "PaymentMethod",
    "UpdateRequest",
    "IdentityCounter",
    "AuditLog",
    "compute_total",
    "quantize_money",
    "utcnow",
    # Repositories
    "EmployeeRepository",
    "SalaryRecordRepository",
    "UpdateRequestRepository",
    "AuditLogRepository",
]
