"""
State Machines - 状态机
Transition tables for salary record payment status and the salary update
authorization workflow.
"""

import enum
from typing import Dict, List

from payroll_ledger.db import PaymentStatus
from payroll_ledger.exceptions import InvalidStateTransition


class PaymentStatusMachine:
    """
    Ordinary payment status transitions.

    Allowed transitions:
    - pending → paid
    - pending → cancelled

    paid and cancelled are terminal for ordinary edits; only a confirmed
    salary update may move a record out of them.
    """

    VALID_TRANSITIONS: Dict[PaymentStatus, List[PaymentStatus]] = {
        PaymentStatus.PENDING: [PaymentStatus.PAID, PaymentStatus.CANCELLED],
        PaymentStatus.PAID: [],
        PaymentStatus.CANCELLED: [],
    }

    @classmethod
    def can_transition(cls, from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: PaymentStatus, to_status: PaymentStatus) -> None:
        """Raise InvalidStateTransition unless the transition is allowed."""
        if not cls.can_transition(from_status, to_status):
            reason = None
            if from_status != PaymentStatus.PENDING:
                reason = "record is no longer pending; use a confirmed salary update"
            raise InvalidStateTransition(from_status.value, to_status.value, reason)

    @classmethod
    def is_editable(cls, status: PaymentStatus) -> bool:
        """Whether a record may be edited without a confirmed salary update."""
        return status == PaymentStatus.PENDING


class UpdateState(enum.Enum):
    """Salary update authorization states."""
    NONE = "none"                # 无待确认修改
    REQUESTED = "requested"      # 已发送验证码
    CONFIRMED = "confirmed"      # 已确认并应用
    EXPIRED = "expired"          # 验证码过期
    SUPERSEDED = "superseded"    # 被新请求取代


class UpdateStateMachine:
    """
    State machine for the salary update authorization workflow.

    Allowed transitions:
    - none → requested
    - requested → confirmed
    - requested → expired
    - requested → superseded
    - requested → none (cancel)
    - confirmed / expired / superseded → none (request discarded)
    """

    VALID_TRANSITIONS: Dict[UpdateState, List[UpdateState]] = {
        UpdateState.NONE: [UpdateState.REQUESTED],
        UpdateState.REQUESTED: [
            UpdateState.CONFIRMED,
            UpdateState.EXPIRED,
            UpdateState.SUPERSEDED,
            UpdateState.NONE,
        ],
        UpdateState.CONFIRMED: [UpdateState.NONE],
        UpdateState.EXPIRED: [UpdateState.NONE],
        UpdateState.SUPERSEDED: [UpdateState.NONE],
    }

    @classmethod
    def can_transition(cls, from_state: UpdateState, to_state: UpdateState) -> bool:
        return to_state in cls.VALID_TRANSITIONS.get(from_state, [])

    @classmethod
    def validate_transition(cls, from_state: UpdateState, to_state: UpdateState) -> None:
        """Raise InvalidStateTransition unless the transition is allowed."""
        if not cls.can_transition(from_state, to_state):
            raise InvalidStateTransition(from_state.value, to_state.value)

    @classmethod
    def get_next_states(cls, current: UpdateState) -> List[UpdateState]:
        return cls.VALID_TRANSITIONS.get(current, [])
