"""
Service Layer Tests

Tests for business logic services including:
- EmployeeService: Registration, contact uniqueness, status, purge and email verification
- SalaryLedgerService: Record creation, derived totals, payment status
- UpdateAuthorizationService: OTP-gated salary updates
- MigrationService: Legacy month-only records
- ImportService / ExportService: Bulk load and Excel reports
"""

import itertools
import json
import os
import sys
import tempfile
from datetime import datetime, date, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest
import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture(scope='module')
def test_db():
    """
    Create a temporary test database for the entire test module.
    Each test registers its own employees, so tests do not interfere.
    """
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, 'test_ledger.db')

    from payroll_ledger.db import init_database, create_all_tables, close_engine

    engine = init_database(db_path)
    create_all_tables(engine)

    yield {
        'engine': engine,
        'db_path': db_path,
        'temp_dir': temp_dir
    }

    # Cleanup
    close_engine()
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def mock_encryption():
    """
    Mock encryption manager for tests that don't need real encryption.
    This speeds up tests significantly.
    """
    from payroll_ledger.security import EncryptionManager

    with patch('payroll_ledger.services.business.get_encryption_manager') as mock_em:
        mock_instance = MagicMock()
        mock_instance.encrypt_json.side_effect = lambda d: "ENC:" + json.dumps(d, sort_keys=True)
        mock_instance.decrypt_json.side_effect = lambda x: json.loads(x[len("ENC:"):])
        mock_instance.redact_sensitive.side_effect = EncryptionManager.redact_sensitive
        mock_em.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def fast_hasher():
    """Challenge hasher with minimal Argon2 cost for faster workflow tests."""
    from payroll_ledger.security import ChallengeHasher

    hasher = ChallengeHasher(time_cost=1, memory_cost=1024, parallelism=1)
    with patch('payroll_ledger.services.business.get_challenge_hasher', return_value=hasher):
        yield hasher


@pytest.fixture
def rate_limiter():
    """Fresh rate limiter per test."""
    from payroll_ledger.security import RateLimiter

    limiter = RateLimiter(max_attempts=5, window_seconds=600, lockout_seconds=300)
    with patch('payroll_ledger.services.business.get_rate_limiter', return_value=limiter):
        yield limiter


_sequence = itertools.count(1)


def _employee_data(**overrides):
    n = next(_sequence)
    data = {
        'name': f'Test Employee {n}',
        'email': f'employee{n}@example.com',
        'phone': f'+91 90000 {n:05d}',
        'designation': 'Engineer',
        'department': 'Engineering',
        'joining_date': date(2023, 1, 15),
        'base_pay': Decimal('30000'),
    }
    data.update(overrides)
    return data


def _create_employee(**overrides):
    from payroll_ledger.services import EmployeeService
    return EmployeeService.create_employee(_employee_data(**overrides), 'admin')


def _january_draft(**overrides):
    draft = {
        'salary_type': 'monthly',
        'window_start': date(2024, 1, 1),
        'window_end': date(2024, 1, 31),
        'basic_salary': Decimal('30000'),
        'allowances': Decimal('2000'),
        'bonus': Decimal('0'),
        'overtime': Decimal('0'),
        'deductions': Decimal('500'),
    }
    draft.update(overrides)
    return draft


# =============================================================================
# EmployeeService Tests
# =============================================================================

class TestEmployeeService:
    """Tests for employee management service."""

    def test_create_employee_allocates_identity(self, test_db):
        """New employees get an EMP identity and normalized contact."""
        employee = _create_employee(email='  Alice.Smith@Example.COM ')

        assert employee['employee_no'].startswith('EMP')
        assert len(employee['employee_no']) >= 7
        assert employee['email'] == 'alice.smith@example.com'
        assert employee['status'] == 'active'
        assert employee['base_pay'] == Decimal('30000.00')

    def test_create_employee_duplicate_email(self, test_db):
        """Email uniqueness ignores case and surrounding whitespace."""
        from payroll_ledger.exceptions import ValidationError

        _create_employee(email='dup.email@example.com')

        with pytest.raises(ValidationError) as exc_info:
            _create_employee(email=' DUP.Email@example.com')

        assert exc_info.value.field == 'email'

    def test_create_employee_duplicate_phone(self, test_db):
        from payroll_ledger.exceptions import ValidationError

        _create_employee(phone='+91 98765 43210')

        with pytest.raises(ValidationError) as exc_info:
            _create_employee(phone=' +91 98765 43210 ')

        assert exc_info.value.field == 'phone'

    def test_create_employee_requires_name(self, test_db):
        from payroll_ledger.exceptions import ValidationError

        with pytest.raises(ValidationError) as exc_info:
            _create_employee(name='   ')

        assert exc_info.value.field == 'name'

    def test_create_employee_negative_base_pay(self, test_db):
        from payroll_ledger.exceptions import ValidationError

        with pytest.raises(ValidationError):
            _create_employee(base_pay=Decimal('-1'))

    def test_rejected_creation_leaves_no_gap(self, test_db):
        """A rejected registration hands its reserved identity back."""
        from payroll_ledger.exceptions import ValidationError
        from payroll_ledger.services import IdentityAllocator

        first = _create_employee()
        with pytest.raises(ValidationError):
            _create_employee(email=first['email'])
        second = _create_employee()

        assert (
            IdentityAllocator.parse_identity(second['employee_no'])
            == IdentityAllocator.parse_identity(first['employee_no']) + 1
        )

    def test_bank_details_redacted(self, test_db, mock_encryption):
        """Bank details are encrypted at rest and redacted unless requested."""
        from payroll_ledger.services import EmployeeService

        employee = _create_employee(bank_details={'account_number': '123456789012', 'ifsc': 'HDFC0001234'})

        redacted = EmployeeService.get_employee(employee['employee_no'])
        assert redacted['bank_details']['account_number'] == '********9012'

        full = EmployeeService.get_employee(employee['employee_no'], include_sensitive=True)
        assert full['bank_details']['account_number'] == '123456789012'

    def test_update_employee_profile(self, test_db):
        from payroll_ledger.services import EmployeeService

        employee = _create_employee()
        updated = EmployeeService.update_employee(
            employee['employee_no'],
            {'department': 'Finance', 'email': 'NEW.ADDRESS@example.com'},
            'admin',
        )

        assert updated['department'] == 'Finance'
        assert updated['email'] == 'new.address@example.com'
        assert updated['employee_no'] == employee['employee_no']

    def test_update_employee_rejects_identity_change(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()

        with pytest.raises(ValidationError):
            EmployeeService.update_employee(employee['employee_no'], {'employee_no': 'EMP9999'}, 'admin')

    def test_update_employee_duplicate_contact(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import ValidationError

        first = _create_employee()
        second = _create_employee()

        with pytest.raises(ValidationError):
            EmployeeService.update_employee(second['employee_no'], {'email': first['email']}, 'admin')

    def test_terminate_employee(self, test_db):
        """Termination is a status change; the identity stays assigned."""
        from payroll_ledger.services import EmployeeService

        employee = _create_employee()
        result = EmployeeService.terminate_employee(employee['employee_no'], 'admin')

        assert result['status'] == 'terminated'
        assert EmployeeService.get_employee(employee['employee_no'])['status'] == 'terminated'

    def test_list_employees_by_status(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.db import EmployeeStatus

        employee = _create_employee()
        EmployeeService.set_status(employee['employee_no'], 'inactive', 'admin')

        inactive = EmployeeService.list_employees(status=EmployeeStatus.INACTIVE)
        assert employee['employee_no'] in [e['employee_no'] for e in inactive]

        active = EmployeeService.list_employees(status=EmployeeStatus.ACTIVE)
        assert employee['employee_no'] not in [e['employee_no'] for e in active]
        assert EmployeeService.count_active() == len(active)

    def test_purge_requires_confirmation(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()

        with pytest.raises(ValidationError):
            EmployeeService.purge_employee(employee['employee_no'], 'admin')

    def test_purge_employee_never_reuses_identity(self, test_db):
        from payroll_ledger.services import EmployeeService, SalaryLedgerService, IdentityAllocator, SystemService
        from payroll_ledger.exceptions import EmployeeNotFound

        employee = _create_employee()
        SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        deleted = EmployeeService.purge_employee(employee['employee_no'], 'admin', confirmed=True)
        assert deleted == 1

        with pytest.raises(EmployeeNotFound):
            EmployeeService.get_employee(employee['employee_no'])

        logs = SystemService.get_audit_logs(action='purge_employee', resource_id=employee['employee_no'])
        assert len(logs) == 1

        replacement = _create_employee()
        assert (
            IdentityAllocator.parse_identity(replacement['employee_no'])
            > IdentityAllocator.parse_identity(employee['employee_no'])
        )

    def test_list_employees_with_salary_summary(self, test_db):
        from payroll_ledger.services import EmployeeService, SalaryLedgerService

        employee = _create_employee()
        no = employee['employee_no']
        january = SalaryLedgerService.create_record(no, _january_draft())
        SalaryLedgerService.mark_paid(no, january['id'], payment_date=date(2024, 2, 1))
        SalaryLedgerService.create_record(
            no, _january_draft(window_start=date(2024, 2, 1), window_end=date(2024, 2, 29))
        )

        plain = [e for e in EmployeeService.list_employees() if e['employee_no'] == no][0]
        assert 'salary_summary' not in plain

        listed = EmployeeService.list_employees(include_summary=True, now=datetime(2024, 1, 20, 9, 0))
        summary = [e for e in listed if e['employee_no'] == no][0]['salary_summary']

        assert summary['total_paid'] == Decimal('31500.00')
        assert summary['pending_amount'] == Decimal('31500.00')
        assert summary['current_month_salary']['id'] == january['id']
        assert summary['total_records'] == 2

    def test_summary_without_current_month_record(self, test_db):
        from payroll_ledger.services import EmployeeService

        employee = _create_employee()

        listed = EmployeeService.list_employees(include_summary=True, now=datetime(2024, 1, 20, 9, 0))
        summary = [e for e in listed if e['employee_no'] == employee['employee_no']][0]['salary_summary']

        assert summary['current_month_salary'] is None
        assert summary['total_records'] == 0
        assert summary['total_paid'] == Decimal('0.00')


class TestEmailVerification:
    """Tests for employee email verification."""

    NOW = datetime(2024, 2, 5, 10, 0, 0)

    def test_new_employees_are_verified_by_default(self, test_db):
        employee = _create_employee()
        assert employee['email_verified'] is True

    def test_issue_and_verify(self, test_db):
        from payroll_ledger.services import EmployeeService, SystemService
        from payroll_ledger.db import session_scope, EmployeeRepository

        employee = EmployeeService.create_employee(_employee_data(), 'admin', email_verified=False)
        no = employee['employee_no']
        assert employee['email_verified'] is False

        token = EmployeeService.issue_email_verification(no, 'admin', now=self.NOW)
        assert len(token) == 64

        with session_scope() as session:
            stored = EmployeeRepository.get_by_employee_no(session, no)
            assert stored.email_verification_hash != token
            assert stored.email_verification_expires_at == self.NOW + timedelta(hours=24)

        verified = EmployeeService.verify_email(token, now=self.NOW + timedelta(hours=1))
        assert verified['employee_no'] == no
        assert verified['email_verified'] is True
        assert EmployeeService.get_employee(no)['email_verified'] is True

        logs = SystemService.get_audit_logs(action='email_verified', resource_id=no)
        assert len(logs) == 1

    def test_token_is_single_use(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import InvalidVerificationToken

        employee = EmployeeService.create_employee(_employee_data(), 'admin', email_verified=False)
        token = EmployeeService.issue_email_verification(employee['employee_no'], now=self.NOW)
        EmployeeService.verify_email(token, now=self.NOW)

        with pytest.raises(InvalidVerificationToken):
            EmployeeService.verify_email(token, now=self.NOW)

    def test_expired_token_rejected(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import InvalidVerificationToken

        employee = EmployeeService.create_employee(_employee_data(), 'admin', email_verified=False)
        no = employee['employee_no']
        token = EmployeeService.issue_email_verification(no, now=self.NOW)

        with pytest.raises(InvalidVerificationToken):
            EmployeeService.verify_email(token, now=self.NOW + timedelta(hours=25))

        assert EmployeeService.get_employee(no)['email_verified'] is False

    def test_unknown_token_rejected(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import InvalidVerificationToken

        with pytest.raises(InvalidVerificationToken):
            EmployeeService.verify_email('0' * 64, now=self.NOW)
        with pytest.raises(InvalidVerificationToken):
            EmployeeService.verify_email('  ', now=self.NOW)

    def test_reissue_replaces_previous_token(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import InvalidVerificationToken

        employee = EmployeeService.create_employee(_employee_data(), 'admin', email_verified=False)
        first = EmployeeService.issue_email_verification(employee['employee_no'], now=self.NOW)
        second = EmployeeService.issue_email_verification(employee['employee_no'], now=self.NOW)

        with pytest.raises(InvalidVerificationToken):
            EmployeeService.verify_email(first, now=self.NOW)
        assert EmployeeService.verify_email(second, now=self.NOW)['email_verified'] is True

    def test_already_verified_cannot_reissue(self, test_db):
        from payroll_ledger.services import EmployeeService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()

        with pytest.raises(ValidationError) as exc_info:
            EmployeeService.issue_email_verification(employee['employee_no'])
        assert exc_info.value.field == 'email'

    def test_email_change_requires_new_verification(self, test_db):
        from payroll_ledger.services import EmployeeService

        employee = _create_employee()
        no = employee['employee_no']

        updated = EmployeeService.update_employee(no, {'designation': 'Lead'}, 'admin')
        assert updated['email_verified'] is True

        new_email = f"moved{next(_sequence)}@example.com"
        updated = EmployeeService.update_employee(no, {'email': new_email}, 'admin')
        assert updated['email'] == new_email
        assert updated['email_verified'] is False

    def test_unverified_employee_cannot_request_update(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import EmployeeService, SalaryLedgerService, UpdateAuthorizationService, UpdateState
        from payroll_ledger.exceptions import EmailNotVerified

        employee = EmployeeService.create_employee(_employee_data(), 'admin', email_verified=False)
        no = employee['employee_no']
        record = SalaryLedgerService.create_record(no, _january_draft())

        with pytest.raises(EmailNotVerified):
            UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record['id'], now=self.NOW)
        assert UpdateAuthorizationService.get_update_state(no, now=self.NOW) == UpdateState.NONE

        token = EmployeeService.issue_email_verification(no, now=self.NOW)
        EmployeeService.verify_email(token, now=self.NOW)

        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record['id'], now=self.NOW)
        assert UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)['bonus'] == Decimal('1000.00')


# =============================================================================
# SalaryLedgerService Tests
# =============================================================================

class TestSalaryLedgerService:
    """Tests for the salary record ledger."""

    def test_create_monthly_record(self, test_db):
        """30000 + 2000 - 500 = 31500, with period fields derived."""
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        assert record['total_salary'] == Decimal('31500.00')
        assert record['salary_type'] == 'monthly'
        assert record['period'] == '2024-01'
        assert record['period_label'] == 'January 2024'
        assert record['pay_date'] == date(2024, 1, 31)
        assert record['payment_status'] == 'pending'
        assert record['payment_method'] == 'bank_transfer'

    def test_basic_salary_defaults_to_base_pay(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee(base_pay=Decimal('42000'))
        draft = _january_draft()
        del draft['basic_salary']

        record = SalaryLedgerService.create_record(employee['employee_no'], draft)

        assert record['basic_salary'] == Decimal('42000.00')
        assert record['total_salary'] == Decimal('43500.00')

    def test_hourly_record_uses_hours_times_rate(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], {
            'salary_type': 'hourly',
            'window_start': date(2024, 1, 15),
            'window_end': date(2024, 1, 15),
            'hours_worked': '7.5',
            'hourly_rate': '400',
        })

        assert record['basic_salary'] == Decimal('3000.00')
        assert record['period'] == '2024-01-15'
        assert record['period_label'] == '15 Jan 2024'

    def test_weekly_and_project_periods(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        weekly = SalaryLedgerService.create_record(employee['employee_no'], {
            'salary_type': 'weekly',
            'window_start': date(2024, 1, 1),
            'window_end': date(2024, 1, 7),
        })
        project = SalaryLedgerService.create_record(employee['employee_no'], {
            'salary_type': 'project',
            'window_start': date(2024, 1, 15),
            'window_end': date(2024, 2, 20),
            'basic_salary': '50000',
        })

        assert weekly['period'] == '2024-W01'
        assert weekly['period_label'] == 'Week 1, 2024'
        assert project['period'] == '2024-01-15/2024-02-20'
        assert project['period_label'] == '15 Jan 2024 - 20 Feb 2024'

    def test_negative_component_rejected(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()

        with pytest.raises(ValidationError) as exc_info:
            SalaryLedgerService.create_record(employee['employee_no'], _january_draft(bonus='-100'))

        assert exc_info.value.field == 'bonus'

    def test_inverted_window_rejected(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()

        with pytest.raises(ValidationError):
            SalaryLedgerService.create_record(
                employee['employee_no'],
                _january_draft(window_start=date(2024, 1, 31), window_end=date(2024, 1, 1)),
            )

    def test_total_salary_cannot_be_supplied(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()

        with pytest.raises(ValidationError) as exc_info:
            SalaryLedgerService.create_record(employee['employee_no'], _january_draft(total_salary='99999'))

        assert exc_info.value.field == 'total_salary'

    def test_duplicate_period_rejected(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()
        SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        with pytest.raises(ValidationError):
            SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

    def test_unknown_employee(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import EmployeeNotFound

        with pytest.raises(EmployeeNotFound):
            SalaryLedgerService.create_record('EMP999999', _january_draft())

    def test_total_property_is_read_only(self, test_db):
        from payroll_ledger.db import SalaryRecord

        record = SalaryRecord(basic_salary=Decimal('100'))
        with pytest.raises(AttributeError):
            record.total_salary = Decimal('1')

    def test_flush_recomputes_stored_total(self, test_db):
        """Direct component edits are recomputed before they reach the database."""
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.db import session_scope, SalaryRecord

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        with session_scope() as session:
            stored = session.get(SalaryRecord, record['id'])
            stored.bonus = Decimal('250')

        with session_scope() as session:
            stored = session.get(SalaryRecord, record['id'])
            assert stored.stored_total == Decimal('31750.00')
            assert stored.stored_total == stored.total_salary

    def test_mark_paid_twice_fails(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import InvalidStateTransition

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        paid = SalaryLedgerService.mark_paid(
            employee['employee_no'], record['id'],
            payment_date=date(2024, 2, 1), payment_method='upi',
        )
        assert paid['payment_status'] == 'paid'
        assert paid['payment_date'] == date(2024, 2, 1)
        assert paid['payment_method'] == 'upi'

        with pytest.raises(InvalidStateTransition):
            SalaryLedgerService.mark_paid(employee['employee_no'], record['id'])

    def test_cancel_after_paid_fails(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import InvalidStateTransition

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())
        SalaryLedgerService.mark_paid(employee['employee_no'], record['id'])

        with pytest.raises(InvalidStateTransition):
            SalaryLedgerService.mark_cancelled(employee['employee_no'], record['id'])

    def test_cancel_pending_record(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import InvalidStateTransition

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        cancelled = SalaryLedgerService.mark_cancelled(employee['employee_no'], record['id'])
        assert cancelled['payment_status'] == 'cancelled'

        with pytest.raises(InvalidStateTransition):
            SalaryLedgerService.mark_paid(employee['employee_no'], record['id'])

    def test_record_of_other_employee_not_found(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import RecordNotFound

        owner = _create_employee()
        other = _create_employee()
        record = SalaryLedgerService.create_record(owner['employee_no'], _january_draft())

        with pytest.raises(RecordNotFound):
            SalaryLedgerService.mark_paid(other['employee_no'], record['id'])

    def test_amend_pending_record(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        amended = SalaryLedgerService.amend_pending_record(
            employee['employee_no'], record['id'], {'overtime': '1200', 'notes': 'Weekend shifts'}
        )

        assert amended['total_salary'] == Decimal('32700.00')
        assert amended['notes'] == 'Weekend shifts'

    def test_amend_paid_record_rejected(self, test_db):
        """Paid records only change through a confirmed salary update."""
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import InvalidStateTransition

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())
        SalaryLedgerService.mark_paid(employee['employee_no'], record['id'])

        with pytest.raises(InvalidStateTransition):
            SalaryLedgerService.amend_pending_record(employee['employee_no'], record['id'], {'bonus': '1000'})

    def test_amend_cannot_change_status(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())

        with pytest.raises(ValidationError):
            SalaryLedgerService.amend_pending_record(
                employee['employee_no'], record['id'], {'payment_status': 'paid'}
            )

    def test_totals_by_status(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        no = employee['employee_no']
        january = SalaryLedgerService.create_record(no, _january_draft())
        SalaryLedgerService.create_record(no, _january_draft(
            window_start=date(2024, 2, 1), window_end=date(2024, 2, 29)
        ))
        march = SalaryLedgerService.create_record(no, _january_draft(
            window_start=date(2024, 3, 1), window_end=date(2024, 3, 31)
        ))
        SalaryLedgerService.mark_paid(no, january['id'])
        SalaryLedgerService.mark_cancelled(no, march['id'])

        assert SalaryLedgerService.total_paid(no) == Decimal('31500.00')
        assert SalaryLedgerService.total_pending(no) == Decimal('31500.00')

    def test_current_period_record(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft(
            window_start=date(2024, 3, 1), window_end=date(2024, 3, 31)
        ))

        current = SalaryLedgerService.current_period_record(employee['employee_no'], datetime(2024, 3, 15, 9, 30))
        assert current['id'] == record['id']

        assert SalaryLedgerService.current_period_record(employee['employee_no'], datetime(2024, 4, 1)) is None

    def test_current_period_matches_legacy_month(self, test_db):
        from payroll_ledger.services import SalaryLedgerService
        from payroll_ledger.db import session_scope, EmployeeRepository, SalaryRecordRepository

        employee = _create_employee()
        with session_scope() as session:
            emp = EmployeeRepository.get_by_employee_no(session, employee['employee_no'])
            legacy = SalaryRecordRepository.create_legacy(session, emp, month='2024-04', basic_salary=Decimal('28000'))
            legacy_id = legacy.id

        current = SalaryLedgerService.current_period_record(employee['employee_no'], datetime(2024, 4, 10))

        assert current['id'] == legacy_id
        assert current['month'] == '2024-04'
        assert current['salary_type'] is None

    def test_list_records_newest_first(self, test_db):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        no = employee['employee_no']
        SalaryLedgerService.create_record(no, _january_draft(
            window_start=date(2024, 3, 1), window_end=date(2024, 3, 31)
        ))
        SalaryLedgerService.create_record(no, _january_draft())

        records = SalaryLedgerService.list_records(no)
        assert [r['period'] for r in records] == ['2024-03', '2024-01']

        oldest_first = SalaryLedgerService.list_records(no, newest_first=False)
        assert [r['period'] for r in oldest_first] == ['2024-01', '2024-03']

    def test_salary_summary(self, test_db):
        from payroll_ledger.services import SalaryLedgerService, SalarySummary

        before = SalaryLedgerService.salary_summary(datetime(2024, 1, 20))

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())
        SalaryLedgerService.mark_paid(employee['employee_no'], record['id'])

        after = SalaryLedgerService.salary_summary(datetime(2024, 1, 20))

        assert isinstance(after, SalarySummary)
        assert after.current_period == '2024-01'
        assert after.total_employees >= before.total_employees + 1
        assert after.total_paid - before.total_paid == Decimal('31500.00')
        assert after.current_period_paid - before.current_period_paid == Decimal('31500.00')


# =============================================================================
# UpdateAuthorizationService Tests
# =============================================================================

class TestUpdateAuthorizationService:
    """Tests for the OTP-gated salary update workflow."""

    NOW = datetime(2024, 2, 5, 10, 0, 0)

    def _paid_january(self):
        from payroll_ledger.services import SalaryLedgerService

        employee = _create_employee()
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())
        SalaryLedgerService.mark_paid(employee['employee_no'], record['id'], payment_date=date(2024, 2, 1))
        return employee['employee_no'], record['id']

    def test_request_returns_fixed_width_code(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        assert len(code) == 6
        assert code.isdigit()
        assert code[0] != '0'
        assert UpdateAuthorizationService.get_update_state(no, now=self.NOW) == UpdateState.REQUESTED

    def test_pending_update_never_exposes_code(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService
        from payroll_ledger.db import session_scope, EmployeeRepository

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        pending = UpdateAuthorizationService.get_pending_update(no, now=self.NOW)
        assert pending['target_record_id'] == record_id
        assert pending['proposed_changes'] == {'bonus': '1000.00'}
        assert pending['expires_at'] == self.NOW + timedelta(minutes=10)
        assert code not in json.dumps(pending, default=str)
        assert 'challenge_hash' not in pending

        with session_scope() as session:
            employee = EmployeeRepository.get_by_employee_no(session, no)
            assert employee.pending_update.challenge_hash != code

    def test_authorized_edit_recomputes_total(self, test_db, fast_hasher, rate_limiter):
        """31500 with bonus changed to 1000 becomes 32500."""
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState
        from payroll_ledger.exceptions import NoPendingUpdate

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        record = UpdateAuthorizationService.confirm_update(no, code, now=self.NOW + timedelta(minutes=3))

        assert record['bonus'] == Decimal('1000.00')
        assert record['total_salary'] == Decimal('32500.00')
        assert record['payment_status'] == 'paid'
        assert UpdateAuthorizationService.get_update_state(no) == UpdateState.NONE

        with pytest.raises(NoPendingUpdate):
            UpdateAuthorizationService.confirm_update(no, code, now=self.NOW + timedelta(minutes=4))

    def test_expired_challenge_leaves_record_unchanged(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, SalaryLedgerService, UpdateState
        from payroll_ledger.exceptions import ExpiredChallenge

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        with pytest.raises(ExpiredChallenge) as exc_info:
            UpdateAuthorizationService.confirm_update(no, code, now=self.NOW + timedelta(minutes=11))

        assert exc_info.value.expired_at == self.NOW + timedelta(minutes=10)
        assert UpdateAuthorizationService.get_update_state(no) == UpdateState.NONE
        record = SalaryLedgerService.get_record(no, record_id)
        assert record['bonus'] == Decimal('0.00')
        assert record['total_salary'] == Decimal('31500.00')

    def test_cancel_expired_request(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState

        no, record_id = self._paid_january()
        UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)
        later = self.NOW + timedelta(minutes=11)

        assert UpdateAuthorizationService.get_update_state(no, now=later) == UpdateState.EXPIRED
        assert UpdateAuthorizationService.cancel_update(no, 'admin', now=later) is True
        assert UpdateAuthorizationService.get_update_state(no, now=later) == UpdateState.NONE

    def test_request_over_expired_request(self, test_db, fast_hasher, rate_limiter):
        """An expired request is discarded rather than superseded."""
        from payroll_ledger.services import UpdateAuthorizationService, SystemService

        no, record_id = self._paid_january()
        UpdateAuthorizationService.request_update(no, {'bonus': '500'}, 'admin', record_id, now=self.NOW)
        later = self.NOW + timedelta(minutes=11)
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=later)

        assert SystemService.get_audit_logs(action='salary_update_superseded', resource_id=no) == []
        assert len(SystemService.get_audit_logs(action='salary_update_expired', resource_id=no)) == 1

        record = UpdateAuthorizationService.confirm_update(no, code, now=later)
        assert record['bonus'] == Decimal('1000.00')

    def test_transitions_follow_current_state(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState, UpdateStateMachine

        no, record_id = self._paid_january()
        with patch.object(
            UpdateStateMachine, 'validate_transition', wraps=UpdateStateMachine.validate_transition
        ) as validate:
            UpdateAuthorizationService.request_update(no, {'bonus': '500'}, 'admin', record_id, now=self.NOW)
            code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)
            UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)

        assert [c.args for c in validate.call_args_list] == [
            (UpdateState.NONE, UpdateState.REQUESTED),
            (UpdateState.REQUESTED, UpdateState.SUPERSEDED),
            (UpdateState.NONE, UpdateState.REQUESTED),
            (UpdateState.REQUESTED, UpdateState.CONFIRMED),
        ]

    def test_confirm_accepts_integer_code(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        record = UpdateAuthorizationService.confirm_update(no, int(code), now=self.NOW)
        assert record['total_salary'] == Decimal('32500.00')

    def test_confirm_without_request(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService
        from payroll_ledger.exceptions import NoPendingUpdate

        employee = _create_employee()

        with pytest.raises(NoPendingUpdate):
            UpdateAuthorizationService.confirm_update(employee['employee_no'], '123456')

    def test_wrong_code_counts_attempt(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState
        from payroll_ledger.exceptions import InvalidCode

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)
        wrong = '100000' if code != '100000' else '100001'

        with pytest.raises(InvalidCode) as exc_info:
            UpdateAuthorizationService.confirm_update(no, wrong, now=self.NOW)

        assert exc_info.value.attempts == 1
        assert exc_info.value.remaining == 4
        pending = UpdateAuthorizationService.get_pending_update(no, now=self.NOW)
        assert pending['failed_attempts'] == 1
        assert UpdateAuthorizationService.get_update_state(no, now=self.NOW) == UpdateState.REQUESTED

        # The right code still works afterwards
        record = UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)
        assert record['total_salary'] == Decimal('32500.00')

    def test_lockout_after_repeated_wrong_codes(self, test_db, fast_hasher):
        from payroll_ledger.services import UpdateAuthorizationService
        from payroll_ledger.security import RateLimiter
        from payroll_ledger.exceptions import InvalidCode, TooManyAttempts

        limiter = RateLimiter(max_attempts=2, window_seconds=600, lockout_seconds=300)
        with patch('payroll_ledger.services.business.get_rate_limiter', return_value=limiter):
            no, record_id = self._paid_january()
            code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)
            wrong = '100000' if code != '100000' else '100001'

            for _ in range(2):
                with pytest.raises(InvalidCode):
                    UpdateAuthorizationService.confirm_update(no, wrong, now=self.NOW)

            with pytest.raises(TooManyAttempts) as exc_info:
                UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)

            assert exc_info.value.retry_after > 0

    def test_locked_limiter_rejects_before_comparison(self, test_db, fast_hasher):
        from payroll_ledger.services import UpdateAuthorizationService
        from payroll_ledger.exceptions import TooManyAttempts

        with patch('payroll_ledger.services.business.get_rate_limiter') as mock_rl:
            mock_instance = MagicMock()
            mock_instance.is_locked.return_value = (True, 300)
            mock_rl.return_value = mock_instance

            with pytest.raises(TooManyAttempts):
                UpdateAuthorizationService.confirm_update('EMP0001', '123456')

            mock_instance.record_attempt.assert_not_called()

    def test_new_request_supersedes_old(self, test_db, fast_hasher, rate_limiter):
        """Only the newest challenge is valid."""
        from payroll_ledger.services import UpdateAuthorizationService, SystemService
        from payroll_ledger.exceptions import InvalidCode

        no, record_id = self._paid_january()
        with patch.object(fast_hasher, 'generate_code', side_effect=['111111', '222222']):
            first = UpdateAuthorizationService.request_update(no, {'bonus': '500'}, 'admin', record_id, now=self.NOW)
            second = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        with pytest.raises(InvalidCode):
            UpdateAuthorizationService.confirm_update(no, first, now=self.NOW)

        record = UpdateAuthorizationService.confirm_update(no, second, now=self.NOW)
        assert record['bonus'] == Decimal('1000.00')

        superseded = SystemService.get_audit_logs(action='salary_update_superseded', resource_id=no)
        assert len(superseded) == 1

    def test_cancel_update_is_idempotent(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState

        no, record_id = self._paid_january()
        UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)

        assert UpdateAuthorizationService.cancel_update(no, 'admin') is True
        assert UpdateAuthorizationService.cancel_update(no, 'admin') is False
        assert UpdateAuthorizationService.get_update_state(no) == UpdateState.NONE

    def test_authorized_edit_can_reopen_paid_record(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService

        no, record_id = self._paid_january()
        code = UpdateAuthorizationService.request_update(
            no, {'payment_status': 'pending'}, 'admin', record_id, now=self.NOW
        )

        record = UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)
        assert record['payment_status'] == 'pending'

    def test_authorized_paid_sets_payment_date(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, SalaryLedgerService

        employee = _create_employee()
        no = employee['employee_no']
        record = SalaryLedgerService.create_record(no, _january_draft())

        code = UpdateAuthorizationService.request_update(
            no, {'payment_status': 'paid'}, 'admin', record['id'], now=self.NOW
        )
        updated = UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)

        assert updated['payment_status'] == 'paid'
        assert updated['payment_date'] == self.NOW.date()

    def test_new_record_intent(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, SalaryLedgerService

        employee = _create_employee()
        no = employee['employee_no']
        code = UpdateAuthorizationService.request_update(no, _january_draft(bonus='1000'), 'admin', now=self.NOW)

        assert SalaryLedgerService.list_records(no) == []

        record = UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)
        assert record['total_salary'] == Decimal('32500.00')
        assert [r['id'] for r in SalaryLedgerService.list_records(no)] == [record['id']]

    def test_request_validates_changes(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState
        from payroll_ledger.exceptions import ValidationError, RecordNotFound

        no, record_id = self._paid_january()

        with pytest.raises(ValidationError):
            UpdateAuthorizationService.request_update(no, {'total_salary': '1'}, 'admin', record_id)
        with pytest.raises(ValidationError):
            UpdateAuthorizationService.request_update(no, {'bonus': '-1'}, 'admin', record_id)
        with pytest.raises(ValidationError):
            UpdateAuthorizationService.request_update(no, {'employee_id': 3}, 'admin', record_id)
        with pytest.raises(ValidationError):
            UpdateAuthorizationService.request_update(no, {}, 'admin', record_id)
        with pytest.raises(RecordNotFound):
            UpdateAuthorizationService.request_update(no, {'bonus': '1'}, 'admin', record_id + 100000)

        assert UpdateAuthorizationService.get_update_state(no) == UpdateState.NONE

    def test_confirm_migrates_legacy_target(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService
        from payroll_ledger.db import session_scope, EmployeeRepository, SalaryRecordRepository, PaymentStatus

        employee = _create_employee()
        no = employee['employee_no']
        with session_scope() as session:
            emp = EmployeeRepository.get_by_employee_no(session, no)
            legacy = SalaryRecordRepository.create_legacy(
                session, emp, month='2023-11', basic_salary=Decimal('30000'),
                payment_status=PaymentStatus.PAID, payment_date=date(2023, 12, 1),
            )
            legacy_id = legacy.id

        code = UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', legacy_id, now=self.NOW)
        record = UpdateAuthorizationService.confirm_update(no, code, now=self.NOW)

        assert record['salary_type'] == 'monthly'
        assert record['period_label'] == 'November 2023'
        assert record['total_salary'] == Decimal('31000.00')

    def test_discard_expired_requests(self, test_db, fast_hasher, rate_limiter):
        from payroll_ledger.services import UpdateAuthorizationService, UpdateState

        no, record_id = self._paid_january()
        UpdateAuthorizationService.request_update(no, {'bonus': '1000'}, 'admin', record_id, now=self.NOW)
        assert UpdateAuthorizationService.get_update_state(no, now=self.NOW + timedelta(hours=1)) == UpdateState.EXPIRED

        removed = UpdateAuthorizationService.discard_expired_requests(now=self.NOW + timedelta(hours=1))

        assert removed >= 1
        assert UpdateAuthorizationService.get_update_state(no) == UpdateState.NONE


# =============================================================================
# MigrationService Tests
# =============================================================================

class TestMigrationService:
    """Tests for legacy record migration."""

    def _legacy_employee(self, *months):
        from payroll_ledger.db import session_scope, EmployeeRepository, SalaryRecordRepository

        employee = _create_employee()
        with session_scope() as session:
            emp = EmployeeRepository.get_by_employee_no(session, employee['employee_no'])
            for month in months:
                SalaryRecordRepository.create_legacy(session, emp, month=month, basic_salary=Decimal('25000'))
        return employee['employee_no']

    def test_migrate_is_idempotent(self, test_db):
        from payroll_ledger.services import MigrationService, SalaryLedgerService

        no = self._legacy_employee('2024-01')

        assert MigrationService.migrate(no) is True
        assert MigrationService.migrate(no) is False

        record = SalaryLedgerService.list_records(no)[0]
        assert record['salary_type'] == 'monthly'
        assert record['period'] == '2024-01'
        assert record['period_label'] == 'January 2024'
        assert record['window_start'] == date(2024, 1, 1)
        assert record['window_end'] == date(2024, 1, 31)
        assert record['pay_date'] == date(2024, 1, 31)
        assert record['total_salary'] == Decimal('25000.00')

    def test_migrate_record_leap_february(self):
        from payroll_ledger.services import migrate_record
        from payroll_ledger.db import SalaryRecord

        record = SalaryRecord(month='2024-02')

        assert migrate_record(record) is True
        assert record.window_end == date(2024, 2, 29)
        assert record.period_label == 'February 2024'

    def test_migrate_record_keeps_pay_date(self):
        from payroll_ledger.services import migrate_record
        from payroll_ledger.db import SalaryRecord

        record = SalaryRecord(month='2024-03', pay_date=date(2024, 4, 5))
        migrate_record(record)

        assert record.pay_date == date(2024, 4, 5)

    def test_migrate_record_unparseable_month(self):
        from payroll_ledger.services import migrate_record
        from payroll_ledger.db import SalaryRecord, SalaryType

        record = SalaryRecord(month='March')

        assert migrate_record(record) is True
        assert record.salary_type == SalaryType.MONTHLY
        assert record.period_label == 'March'
        assert record.window_start is None

    def test_current_records_untouched(self):
        from payroll_ledger.services import migrate_record
        from payroll_ledger.db import SalaryRecord, SalaryType

        record = SalaryRecord(salary_type=SalaryType.WEEKLY, period='2024-W02', month='2024-01')

        assert migrate_record(record) is False
        assert record.period == '2024-W02'

    def test_migrate_all(self, test_db):
        from payroll_ledger.services import MigrationService

        self._legacy_employee('2023-05', '2023-06')

        assert MigrationService.migrate_all() >= 2
        assert MigrationService.migrate_all() == 0

    def test_migrate_unknown_employee(self, test_db):
        from payroll_ledger.services import MigrationService
        from payroll_ledger.exceptions import EmployeeNotFound

        with pytest.raises(EmployeeNotFound):
            MigrationService.migrate('EMP999998')


# =============================================================================
# ImportService / ExportService Tests
# =============================================================================

@pytest.fixture
def temp_excel_file():
    """Temporary path for export tests."""
    temp_dir = tempfile.mkdtemp()
    file_path = os.path.join(temp_dir, 'test_export.xlsx')

    yield file_path

    # Cleanup
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


class TestImportService:
    """Tests for bulk salary record import."""

    def test_import_mixed_rows(self, test_db):
        from payroll_ledger.services import ImportService, SalaryLedgerService

        employee = _create_employee()
        no = employee['employee_no']
        df = pd.DataFrame([
            {'employee_no': no, 'salary_type': 'monthly', 'window_start': '2024-05-01',
             'window_end': '2024-05-31', 'basic_salary': 30000, 'allowances': 2000,
             'deductions': 500, 'payment_status': 'paid', 'payment_date': '2024-06-01'},
            {'employee_no': no, 'month': '2024-04', 'basic_salary': 29000},
            {'employee_no': no, 'salary_type': 'monthly', 'window_start': '2024-06-01',
             'window_end': '2024-06-30', 'basic_salary': -5},
            {'employee_no': 'EMP999997', 'salary_type': 'monthly', 'window_start': '2024-05-01',
             'window_end': '2024-05-31'},
        ])

        result = ImportService.import_salary_records(df, 'admin')

        assert result.imported == 2
        assert result.legacy == 1
        assert result.failed == 2
        assert len(result.errors) == 2
        assert SalaryLedgerService.total_paid(no) == Decimal('31500.00')

        periods = {r['period'] or r['month'] for r in SalaryLedgerService.list_records(no)}
        assert periods == {'2024-05', '2024-04'}

    def test_import_chinese_headers(self, test_db):
        from payroll_ledger.services import ImportService, SalaryLedgerService

        employee = _create_employee()
        df = pd.DataFrame([
            {'员工编号': employee['employee_no'], '薪资类型': 'weekly', '开始日期': '2024-01-08',
             '结束日期': '2024-01-14', '基本工资': 7000, '奖金': 500},
        ])

        result = ImportService.import_salary_records(df, 'admin')

        assert result.imported == 1
        record = SalaryLedgerService.list_records(employee['employee_no'])[0]
        assert record['period'] == '2024-W02'
        assert record['total_salary'] == Decimal('7500.00')

    def test_import_rejects_duplicate_legacy_month(self, test_db):
        from payroll_ledger.services import ImportService

        employee = _create_employee()
        df = pd.DataFrame([
            {'employee_no': employee['employee_no'], 'month': '2023-09', 'basic_salary': 1000},
            {'employee_no': employee['employee_no'], 'month': '2023-09', 'basic_salary': 1000},
        ])

        result = ImportService.import_salary_records(df, 'admin')

        assert result.legacy == 1
        assert result.failed == 1

    def test_import_cancelled_row(self, test_db):
        from payroll_ledger.services import ImportService, SalaryLedgerService

        employee = _create_employee()
        df = pd.DataFrame([
            {'employee_no': employee['employee_no'], 'salary_type': 'monthly', 'window_start': '2024-07-01',
             'window_end': '2024-07-31', 'basic_salary': 1000, 'payment_status': 'cancelled'},
        ])

        result = ImportService.import_salary_records(df, 'admin')

        assert result.imported == 1
        record = SalaryLedgerService.list_records(employee['employee_no'])[0]
        assert record['payment_status'] == 'cancelled'
        assert record['payment_date'] is None

    def test_failed_settlement_leaves_no_record(self, test_db):
        """A row whose status cannot be applied is not stored as pending."""
        from payroll_ledger.services import ImportService, SalaryLedgerService, SystemService
        from payroll_ledger.exceptions import ValidationError

        employee = _create_employee()
        no = employee['employee_no']
        df = pd.DataFrame([
            {'employee_no': no, 'salary_type': 'monthly', 'window_start': '2024-08-01',
             'window_end': '2024-08-31', 'basic_salary': 1000, 'payment_status': 'paid',
             'payment_date': '2024-09-01'},
        ])

        with patch.object(SalaryLedgerService, '_apply_transition', side_effect=ValidationError('rejected')):
            result = ImportService.import_salary_records(df, 'admin')

        assert result.imported == 0
        assert result.failed == 1
        assert SalaryLedgerService.list_records(no) == []

        created = [
            log for log in SystemService.get_audit_logs(action='create_salary_record')
            if log['metadata'] and log['metadata'].get('employee_no') == no
        ]
        assert created == []


class TestExportService:
    """Tests for Excel exports."""

    def test_export_salary_records_sanitized(self, test_db, temp_excel_file):
        from payroll_ledger.services import ExportService, SalaryLedgerService, SystemService

        employee = _create_employee()
        no = employee['employee_no']
        SalaryLedgerService.create_record(no, _january_draft(notes='=HYPERLINK("http://evil")'))

        result = ExportService.export_salary_records(no, temp_excel_file, 'admin')

        assert result['rows'] == 1
        assert len(result['sha256']) == 64
        df = pd.read_excel(temp_excel_file)
        assert df.loc[0, 'Notes'].startswith("'=")
        assert df.loc[0, 'Total Salary'] == 31500.0

        logs = SystemService.get_audit_logs(action='export_salary_records', resource_id=no)
        assert logs[0]['metadata']['sha256'] == result['sha256']

    def test_export_salary_summary(self, test_db, temp_excel_file):
        from payroll_ledger.services import ExportService, SalaryLedgerService

        employee = _create_employee(name='@Summary Person')
        record = SalaryLedgerService.create_record(employee['employee_no'], _january_draft())
        SalaryLedgerService.mark_paid(employee['employee_no'], record['id'])

        result = ExportService.export_salary_summary(temp_excel_file, 'admin')

        df = pd.read_excel(temp_excel_file)
        assert result['rows'] == len(df)
        row = df[df['Employee No'] == employee['employee_no']].iloc[0]
        assert row['Name'] == "'@Summary Person"
        assert row['Total Paid'] == 31500.0


# =============================================================================
# Periods and State Machine Tests
# =============================================================================

class TestPeriods:
    """Tests for period keys and labels."""

    def test_month_helpers(self):
        from payroll_ledger.services.periods import month_label, month_window, month_key

        assert month_label('2024-12') == 'December 2024'
        assert month_window('2023-02') == (date(2023, 2, 1), date(2023, 2, 28))
        assert month_key(date(2024, 7, 9)) == '2024-07'

    def test_month_label_rejects_bad_key(self):
        from payroll_ledger.services.periods import month_label

        with pytest.raises(ValueError):
            month_label('2024-13')

    def test_weekly_period_uses_iso_year(self):
        from payroll_ledger.services.periods import derive_period
        from payroll_ledger.db import SalaryType

        assert derive_period(SalaryType.WEEKLY, date(2024, 12, 30), date(2025, 1, 5)) == ('2025-W01', 'Week 1, 2025')

    def test_yearly_period(self):
        from payroll_ledger.services.periods import derive_period
        from payroll_ledger.db import SalaryType

        assert derive_period(SalaryType.YEARLY, date(2024, 1, 1), date(2024, 12, 31)) == ('2024', '2024')

    def test_period_validation(self):
        from payroll_ledger.services.periods import is_valid_period
        from payroll_ledger.db import SalaryType

        assert is_valid_period(SalaryType.MONTHLY, '2024-01')
        assert not is_valid_period(SalaryType.MONTHLY, '2024-1')
        assert is_valid_period(SalaryType.WEEKLY, '2024-W52')
        assert not is_valid_period(SalaryType.WEEKLY, '2024-W60')
        assert is_valid_period(SalaryType.PROJECT, 'PRJ-ALPHA')
        assert not is_valid_period(SalaryType.DAILY, '')


class TestStateMachines:
    """Tests for payment status and update workflow transitions."""

    def test_payment_transitions(self):
        from payroll_ledger.services import PaymentStatusMachine
        from payroll_ledger.db import PaymentStatus

        assert PaymentStatusMachine.can_transition(PaymentStatus.PENDING, PaymentStatus.PAID)
        assert PaymentStatusMachine.can_transition(PaymentStatus.PENDING, PaymentStatus.CANCELLED)
        assert not PaymentStatusMachine.can_transition(PaymentStatus.PAID, PaymentStatus.PENDING)
        assert not PaymentStatusMachine.can_transition(PaymentStatus.CANCELLED, PaymentStatus.PAID)

    def test_invalid_payment_transition_message(self):
        from payroll_ledger.services import PaymentStatusMachine
        from payroll_ledger.db import PaymentStatus
        from payroll_ledger.exceptions import InvalidStateTransition

        with pytest.raises(InvalidStateTransition) as exc_info:
            PaymentStatusMachine.validate_transition(PaymentStatus.PAID, PaymentStatus.PAID)

        assert exc_info.value.from_state == 'paid'
        assert 'salary update' in str(exc_info.value)

    def test_update_transitions(self):
        from payroll_ledger.services import UpdateState, UpdateStateMachine
        from payroll_ledger.exceptions import InvalidStateTransition

        assert UpdateStateMachine.can_transition(UpdateState.NONE, UpdateState.REQUESTED)
        assert UpdateStateMachine.can_transition(UpdateState.REQUESTED, UpdateState.SUPERSEDED)
        assert UpdateStateMachine.get_next_states(UpdateState.EXPIRED) == [UpdateState.NONE]

        with pytest.raises(InvalidStateTransition):
            UpdateStateMachine.validate_transition(UpdateState.NONE, UpdateState.CONFIRMED)
