"""
Configuration - 配置管理
Settings loaded from environment variables (and an optional .env file).
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_path: str
    sql_debug: bool
    db_busy_timeout: float
    keys_dir: str
    master_key: Optional[str]

    # Salary update challenge (OTP)
    otp_digits: int
    otp_ttl_minutes: int
    otp_max_attempts: int
    otp_lockout_seconds: int

    # Email verification
    auto_verify_email: bool
    email_verification_ttl_hours: int

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            database_path=os.getenv("DATABASE_PATH", "payroll.db"),
            sql_debug=os.getenv("SQL_DEBUG", "false").lower() == "true",
            db_busy_timeout=float(os.getenv("DB_BUSY_TIMEOUT", "30")),
            keys_dir=os.getenv("KEYS_DIR", "."),
            master_key=os.getenv("LEDGER_MASTER_KEY") or None,
            otp_digits=int(os.getenv("OTP_DIGITS", "6")),
            otp_ttl_minutes=int(os.getenv("OTP_TTL_MINUTES", "10")),
            otp_max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", "5")),
            otp_lockout_seconds=int(os.getenv("OTP_LOCKOUT_SECONDS", "300")),
            auto_verify_email=os.getenv("AUTO_VERIFY_EMAIL", "true").lower() == "true",
            email_verification_ttl_hours=int(os.getenv("EMAIL_VERIFICATION_TTL_HOURS", "24")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()
