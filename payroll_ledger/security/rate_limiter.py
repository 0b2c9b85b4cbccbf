"""
Rate Limiter Module - 验证码尝试速率限制模块
Caps failed challenge-code entries to prevent brute force of salary update codes.
"""

import time
from typing import Dict, Tuple, Optional
from dataclasses import dataclass
from threading import Lock

from payroll_ledger.config import get_settings


@dataclass
class AttemptRecord:
    """Failed code entries for one employee identity."""
    attempts: int = 0
    first_attempt_time: float = 0.0
    locked_until: float = 0.0


class RateLimiter:
    """
    Rate limiter for challenge code entries.
    速率限制器 - 防止暴力破解验证码

    Default settings:
    - 5 failed attempts within 5 minutes triggers a lockout
    - Lockout duration is 5 minutes
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 300,
    ):
        """
        Args:
            max_attempts: Maximum failed attempts before lockout
            window_seconds: Time window for counting attempts (seconds)
            lockout_seconds: Duration of lockout (seconds)
        """
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds

        self._records: Dict[str, AttemptRecord] = {}
        self._lock = Lock()

    def _get_record(self, identifier: str) -> AttemptRecord:
        if identifier not in self._records:
            self._records[identifier] = AttemptRecord()
        return self._records[identifier]

    def _cleanup_expired(self, record: AttemptRecord, now: float) -> None:
        """Reset record if window has expired."""
        if record.first_attempt_time > 0:
            if now - record.first_attempt_time > self.window_seconds:
                record.attempts = 0
                record.first_attempt_time = 0.0

    def is_locked(self, identifier: str) -> Tuple[bool, int]:
        """
        Check if an identifier is currently locked out.

        Returns:
            Tuple of (is_locked, remaining_seconds)
        """
        with self._lock:
            now = time.time()
            # Lookups never create entries; only recorded attempts do
            record = self._records.get(identifier)

            if record is not None and record.locked_until > now:
                return True, int(record.locked_until - now) + 1

            return False, 0

    def get_remaining_attempts(self, identifier: str) -> int:
        """Number of failed entries left before lockout."""
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return self.max_attempts
            self._cleanup_expired(record, time.time())
            return max(0, self.max_attempts - record.attempts)

    def record_attempt(self, identifier: str, success: bool) -> int:
        """
        Record a code entry.

        Args:
            identifier: Employee identity the code was entered for
            success: Whether the code matched

        Returns:
            Remaining attempts before lockout
        """
        with self._lock:
            now = time.time()
            record = self._get_record(identifier)

            if success:
                record.attempts = 0
                record.first_attempt_time = 0.0
                record.locked_until = 0.0
                return self.max_attempts

            self._cleanup_expired(record, now)

            if record.attempts == 0:
                record.first_attempt_time = now

            record.attempts += 1

            if record.attempts >= self.max_attempts:
                record.locked_until = now + self.lockout_seconds

            return max(0, self.max_attempts - record.attempts)

    def unlock(self, identifier: str) -> None:
        """Manually unlock an identifier."""
        with self._lock:
            self._records.pop(identifier, None)


# Singleton instance
_rate_limiter: Optional[RateLimiter] = None
_rate_limiter_lock = Lock()


def get_rate_limiter() -> RateLimiter:
    """Get or create the singleton RateLimiter configured from settings."""
    global _rate_limiter

    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                settings = get_settings()
                _rate_limiter = RateLimiter(
                    max_attempts=settings.otp_max_attempts,
                    window_seconds=settings.otp_ttl_minutes * 60,
                    lockout_seconds=settings.otp_lockout_seconds,
                )

    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the singleton instance (for testing purposes)."""
    global _rate_limiter
    _rate_limiter = None
