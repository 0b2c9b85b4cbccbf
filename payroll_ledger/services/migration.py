"""
Legacy Migration - 旧数据迁移
Upgrades month-only salary records to the pay-interval shape.

Rows written before pay intervals existed carry only ``month`` ("2024-01").
Migration turns them into monthly records in place. Running it again is a
no-op, and records that already have a salary type are never touched.
"""

import logging

from payroll_ledger.db import (
    session_scope,
    SalaryRecord,
    SalaryType,
    EmployeeRepository,
    SalaryRecordRepository,
    AuditLogRepository,
)
from payroll_ledger.exceptions import EmployeeNotFound
from .periods import is_month_key, month_label, month_window

logger = logging.getLogger(__name__)


def migrate_record(record: SalaryRecord) -> bool:
    """
    Fill the pay-interval fields of one legacy record.

    Returns:
        True if the record was changed, False if there was nothing to do
    """
    if record.salary_type is not None or not record.month:
        return False

    record.salary_type = SalaryType.MONTHLY
    record.period = record.month

    if is_month_key(record.month):
        record.period_label = month_label(record.month)
        record.window_start, record.window_end = month_window(record.month)
        if record.pay_date is None:
            record.pay_date = record.window_end
    else:
        # Keep the raw value visible; there is no window to derive
        record.period_label = record.month
        logger.warning(
            "legacy_month_unparseable",
            extra={"record_id": record.id, "month": record.month},
        )

    return True


class MigrationService:
    """
    Legacy record migration service.
    旧工资记录迁移服务
    """

    @staticmethod
    def migrate(employee_no: str, actor: str = "system") -> bool:
        """
        Migrate one employee's legacy records.

        Returns:
            True if any record changed
        """
        with session_scope() as session:
            employee = EmployeeRepository.get_for_update(session, employee_no)
            if employee is None:
                raise EmployeeNotFound(employee_no)

            changed = [
                record.id
                for record in SalaryRecordRepository.list_legacy(session, employee.id)
                if migrate_record(record)
            ]
            if not changed:
                return False

            session.flush()
            AuditLogRepository.create(
                session,
                actor=actor,
                action="migrate_salary_records",
                resource_type="employee",
                resource_id=employee_no,
                metadata={"record_ids": changed},
            )

        logger.info(
            "legacy_records_migrated",
            extra={"employee_no": employee_no, "count": len(changed)},
        )
        return True

    @staticmethod
    def migrate_all(actor: str = "system") -> int:
        """
        Migrate every legacy record in the ledger.

        Returns:
            Number of records changed
        """
        with session_scope() as session:
            count = 0
            for record in SalaryRecordRepository.list_legacy(session):
                if migrate_record(record):
                    count += 1

            if count:
                session.flush()
                AuditLogRepository.create(
                    session,
                    actor=actor,
                    action="migrate_salary_records",
                    result="success",
                    metadata={"count": count},
                )

        logger.info("legacy_migration_complete", extra={"count": count})
        return count
