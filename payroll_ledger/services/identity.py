"""
Identity Allocator - 员工编号分配
Sequential EMP#### identities drawn from a locked counter row.

The counter row is the only source of the next number; an aggregate
max-plus-one query is used only to seed the counter on first use and to
resync it after a collision. The increment belongs to the caller's
transaction, so a rollback hands the number back.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from payroll_ledger.db import EmployeeRepository, IdentityCounter
from payroll_ledger.exceptions import IdentityAllocationError

logger = logging.getLogger(__name__)


class IdentityAllocator:
    """
    Allocates employee identities.
    员工编号分配器 - 加锁计数器行，保证并发下不重复
    """

    COUNTER_NAME = "employee"
    PREFIX = "EMP"
    WIDTH = 4
    IDENTITY_PATTERN = re.compile(r"^EMP(\d+)$")

    @staticmethod
    def format_identity(number: int) -> str:
        """7 -> 'EMP0007'; widens past 9999 ('EMP10000')."""
        if number <= 0:
            raise ValueError("Identity numbers start at 1")
        return f"{IdentityAllocator.PREFIX}{number:0{IdentityAllocator.WIDTH}d}"

    @staticmethod
    def parse_identity(employee_no: str) -> Optional[int]:
        """Numeric suffix of an identity, or None for foreign formats."""
        match = IdentityAllocator.IDENTITY_PATTERN.match(employee_no or "")
        if not match:
            return None
        return int(match.group(1))

    @staticmethod
    def max_assigned(session: Session) -> int:
        """Highest numeric suffix among assigned identities (0 if none)."""
        numbers: List[int] = []
        for employee_no in EmployeeRepository.list_employee_numbers(session):
            number = IdentityAllocator.parse_identity(employee_no)
            if number is not None:
                numbers.append(number)
        return max(numbers, default=0)

    @staticmethod
    def _lock_counter(session: Session) -> Optional[IdentityCounter]:
        stmt = (
            select(IdentityCounter)
            .where(IdentityCounter.name == IdentityAllocator.COUNTER_NAME)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _get_or_create_counter(session: Session) -> IdentityCounter:
        """Lock the counter row, seeding it from assigned identities on first use."""
        counter = IdentityAllocator._lock_counter(session)
        if counter is not None:
            return counter

        seed = IdentityAllocator.max_assigned(session)
        savepoint = session.begin_nested()
        try:
            counter = IdentityCounter(name=IdentityAllocator.COUNTER_NAME, current_value=seed)
            session.add(counter)
            session.flush()
            savepoint.commit()
            logger.info(
                "identity_counter_seeded",
                extra={"counter": IdentityAllocator.COUNTER_NAME, "seed": seed},
            )
            return counter
        except IntegrityError:
            # Another writer created the row first
            logger.debug(
                "identity_counter_race_retry",
                extra={"counter": IdentityAllocator.COUNTER_NAME},
            )
            savepoint.rollback()
            session.expire_all()
            counter = IdentityAllocator._lock_counter(session)
            if counter is None:
                raise IdentityAllocationError("Identity counter vanished during seeding")
            return counter

    @staticmethod
    def allocate(session: Session) -> str:
        """
        Reserve the next identity inside the caller's transaction.

        Raises:
            IdentityAllocationError: If the counter cannot be locked or written
        """
        try:
            counter = IdentityAllocator._get_or_create_counter(session)
            counter.current_value += 1
            session.flush()
            value = counter.current_value
        except SQLAlchemyError as e:
            logger.error("identity_allocation_failed", extra={"error": str(e)})
            raise IdentityAllocationError(f"Unable to reserve an employee identity: {e}") from e

        employee_no = IdentityAllocator.format_identity(value)
        logger.debug("identity_allocated", extra={"employee_no": employee_no})
        return employee_no

    @staticmethod
    def resync(session: Session) -> int:
        """
        Raise the counter to at least the highest assigned identity.

        Used after an identity collision (for example, rows inserted by an
        older max-plus-one allocator). Never lowers the counter.

        Returns:
            The counter value after resync
        """
        try:
            counter = IdentityAllocator._get_or_create_counter(session)
            highest = IdentityAllocator.max_assigned(session)
            if highest > counter.current_value:
                logger.warning(
                    "identity_counter_behind",
                    extra={"counter_value": counter.current_value, "max_assigned": highest},
                )
                counter.current_value = highest
                session.flush()
            return counter.current_value
        except SQLAlchemyError as e:
            raise IdentityAllocationError(f"Unable to resync identity counter: {e}") from e

    @staticmethod
    def current_value(session: Session) -> Optional[int]:
        """Current counter value without incrementing (None before first use)."""
        stmt = select(IdentityCounter.current_value).where(
            IdentityCounter.name == IdentityAllocator.COUNTER_NAME
        )
        return session.execute(stmt).scalar_one_or_none()
