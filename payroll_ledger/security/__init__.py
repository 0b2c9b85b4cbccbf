"""
Security module - 安全模块
Provides challenge-code hashing, encryption, rate limiting, and data sanitization.
"""

from .core import (
    ChallengeHasher,
    EncryptionManager,
    get_challenge_hasher,
    get_encryption_manager,
    generate_verification_token,
    hash_verification_token,
    reset_managers,
)
from .rate_limiter import (
    RateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)
from .sanitizer import (
    sanitize_for_spreadsheet,
    sanitize_dataframe_for_export,
)

__all__ = [
    # Core
    "ChallengeHasher",
    "EncryptionManager",
    "get_challenge_hasher",
    "get_encryption_manager",
    "generate_verification_token",
    "hash_verification_token",
    "reset_managers",
    # Rate Limiter
    "RateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
    # Sanitizer
    "sanitize_for_spreadsheet",
    "sanitize_dataframe_for_export",
]
