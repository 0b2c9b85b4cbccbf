"""
Services module - 业务服务模块
Provides business logic layer for the payroll record ledger.
"""

from .business import (
    EmployeeService,
    SalaryLedgerService,
    UpdateAuthorizationService,
    ImportService,
    ExportService,
    SystemService,
    SalarySummary,
    ImportResult,
)
from .identity import IdentityAllocator
from .migration import MigrationService, migrate_record
from .state_machine import (
    PaymentStatusMachine,
    UpdateState,
    UpdateStateMachine,
)

__all__ = [
    # Business
    "EmployeeService",
    "SalaryLedgerService",
    "UpdateAuthorizationService",
    "ImportService",
    "ExportService",
    "SystemService",
    "SalarySummary",
    "ImportResult",
    # Identity
    "IdentityAllocator",
    # Migration
    "MigrationService",
    "migrate_record",
    # State machines
    "PaymentStatusMachine",
    "UpdateState",
    "UpdateStateMachine",
]
