"""
Pay Periods - 工资期间
Period keys and labels for each salary type.

    monthly  2024-01                 January 2024
    weekly   2024-W03                Week 3, 2024
    daily    2024-01-15              15 Jan 2024
    hourly   2024-01-15              15 Jan 2024
    yearly   2024                    2024
    project  2024-01-15/2024-02-20   15 Jan 2024 - 20 Feb 2024
"""

import calendar
import re
from datetime import date
from typing import Tuple

from payroll_ledger.db.models import SalaryType

# Fixed English names; strftime("%B") follows the process locale.
MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]
MONTH_ABBR = [name[:3] for name in MONTH_NAMES]

MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

PERIOD_PATTERNS = {
    SalaryType.MONTHLY: MONTH_PATTERN,
    SalaryType.WEEKLY: re.compile(r"^\d{4}-W(0[1-9]|[1-4]\d|5[0-3])$"),
    SalaryType.DAILY: re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    SalaryType.HOURLY: re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    SalaryType.YEARLY: re.compile(r"^\d{4}$"),
}


def month_key(day: date) -> str:
    """YYYY-MM key of the month containing ``day``."""
    return f"{day.year:04d}-{day.month:02d}"


def is_month_key(value: str) -> bool:
    return bool(value and MONTH_PATTERN.match(value))


def month_label(key: str) -> str:
    """'2024-01' -> 'January 2024'"""
    match = MONTH_PATTERN.match(key)
    if not match:
        raise ValueError(f"Not a YYYY-MM month key: {key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    return f"{MONTH_NAMES[month - 1]} {year}"


def month_window(key: str) -> Tuple[date, date]:
    """First and last calendar day of a YYYY-MM month."""
    match = MONTH_PATTERN.match(key)
    if not match:
        raise ValueError(f"Not a YYYY-MM month key: {key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def day_label(day: date) -> str:
    return f"{day.day:02d} {MONTH_ABBR[day.month - 1]} {day.year}"


def derive_period(salary_type: SalaryType, window_start: date, window_end: date) -> Tuple[str, str]:
    """
    Period key and label for a pay window.

    The key is taken from ``window_start`` except for project records, whose
    key spans the whole window.
    """
    if salary_type == SalaryType.MONTHLY:
        key = month_key(window_start)
        return key, month_label(key)

    if salary_type == SalaryType.WEEKLY:
        iso_year, iso_week, _ = window_start.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}", f"Week {iso_week}, {iso_year}"

    if salary_type in (SalaryType.DAILY, SalaryType.HOURLY):
        return window_start.isoformat(), day_label(window_start)

    if salary_type == SalaryType.YEARLY:
        return f"{window_start.year:04d}", str(window_start.year)

    # project
    return (
        f"{window_start.isoformat()}/{window_end.isoformat()}",
        f"{day_label(window_start)} - {day_label(window_end)}",
    )


def is_valid_period(salary_type: SalaryType, period: str) -> bool:
    """Check a caller-supplied period key against its salary type's format."""
    if not period:
        return False
    pattern = PERIOD_PATTERNS.get(salary_type)
    if pattern is None:
        # Project keys are free-form codes
        return len(period) <= 50
    return bool(pattern.match(period))
