"""
Core Security Module - 核心安全模块
Challenge-code hashing for salary update authorization, email verification
tokens and field-level encryption for employee bank details.
"""

import os
import base64
import hashlib
import json
import secrets
from pathlib import Path
from typing import Optional, Dict, Any, Union
from threading import Lock

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHash

from payroll_ledger.config import get_settings
from payroll_ledger.db.models import utcnow


class ChallengeHasher:
    """
    Issues and verifies one-time numeric challenge codes.
    验证码管理器 - 生成验证码并使用 Argon2id 哈希存储

    Only the hash is ever persisted; the plaintext code goes back to the
    caller for out-of-band delivery.
    """

    def __init__(
        self,
        digits: int = 6,
        time_cost: int = 2,
        memory_cost: int = 19456,
        parallelism: int = 1,
    ):
        """
        Args:
            digits: Fixed width of generated codes
            time_cost: Number of Argon2 iterations
            memory_cost: Argon2 memory usage in KiB
            parallelism: Number of parallel threads
        """
        if digits < 4:
            raise ValueError("Challenge codes need at least 4 digits")
        self.digits = digits
        self.hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=16,
        )

    def generate_code(self) -> str:
        """Random fixed-width numeric code without a leading zero."""
        low = 10 ** (self.digits - 1)
        return str(low + secrets.randbelow(9 * low))

    def hash_code(self, code: str) -> str:
        return self.hasher.hash(code)

    def verify_code(self, code: Union[str, int], code_hash: str) -> bool:
        """
        Verify a supplied code against a stored hash.

        Codes may arrive as integers (e.g. from a JSON body).

        Returns:
            True if the code matches, False otherwise
        """
        code = "" if code is None else str(code).strip()
        if not code.isdigit() or len(code) != self.digits:
            return False
        try:
            return self.hasher.verify(code_hash, code)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False


def generate_verification_token() -> str:
    """Random 256-bit email verification token (hex)."""
    return secrets.token_hex(32)


def hash_verification_token(token: str) -> str:
    """
    SHA-256 digest of a verification token.
    邮箱验证令牌哈希 - 数据库只存哈希

    Tokens are high-entropy, so a fast unsalted digest is enough and lets
    the stored hash be looked up directly.
    """
    return hashlib.sha256(str(token).strip().encode()).hexdigest()


class EncryptionManager:
    """
    Manages field-level encryption using Fernet (AES-128-CBC with HMAC).
    加密管理器 - 用于银行账户信息的字段级加密
    """

    KEYS_FILE = "encryption_keys.dat"
    SALT_SIZE = 16

    def __init__(self, master_key: str, keys_dir: Optional[str] = None):
        """
        Initialize encryption manager with master key.

        Args:
            master_key: The master password used to derive the key-encryption key
            keys_dir: Directory holding the encrypted data-key file
        """
        if not master_key:
            raise ValueError("A master key is required for encryption")
        self.master_key = master_key
        self.keys_dir = Path(keys_dir) if keys_dir else Path(".")
        self.keys_file = self.keys_dir / self.KEYS_FILE

        if self.keys_file.exists():
            self._load_keys()
        else:
            self._create_keys()

    def _derive_key_from_master(self, salt: bytes) -> bytes:
        """Derive a Fernet key from the master password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,
        )
        return base64.urlsafe_b64encode(kdf.derive(self.master_key.encode()))

    def _create_keys(self) -> None:
        """Create a new data key and save it wrapped by the master key."""
        self.data_key = Fernet.generate_key()
        self.fernet = Fernet(self.data_key)

        self.keys_dir.mkdir(parents=True, exist_ok=True)
        salt = os.urandom(self.SALT_SIZE)
        key_fernet = Fernet(self._derive_key_from_master(salt))

        keys_data = {
            "version": 1,
            "key": self.data_key.decode(),
            "created_at": utcnow().isoformat(),
        }
        encrypted_data = key_fernet.encrypt(json.dumps(keys_data).encode())

        # File layout: salt + encrypted data
        with open(self.keys_file, "wb") as f:
            f.write(salt)
            f.write(encrypted_data)

    def _load_keys(self) -> None:
        """Load and unwrap the data key from file."""
        with open(self.keys_file, "rb") as f:
            salt = f.read(self.SALT_SIZE)
            encrypted_data = f.read()

        key_fernet = Fernet(self._derive_key_from_master(salt))
        try:
            keys_data = json.loads(key_fernet.decrypt(encrypted_data).decode())
        except InvalidToken:
            raise ValueError("Invalid master key - unable to decrypt encryption keys")

        self.data_key = keys_data["key"].encode()
        self.fernet = Fernet(self.data_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string into a Fernet token."""
        if not plaintext:
            return plaintext
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            ValueError: If the token was not produced with this key
        """
        if not ciphertext:
            return ciphertext
        try:
            return self.fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            raise ValueError("Unable to decrypt value with the current key")

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data, sort_keys=True))

    def decrypt_json(self, ciphertext: str) -> Dict[str, Any]:
        return json.loads(self.decrypt(ciphertext))

    @staticmethod
    def redact_sensitive(value: str, show_last: int = 4) -> str:
        """
        Redact sensitive data, showing only last N characters.
        脱敏处理 - 只显示最后N位
        """
        if not value or len(value) <= show_last:
            return "*" * len(value) if value else ""

        hidden_count = len(value) - show_last
        return "*" * hidden_count + value[-show_last:]


# Singleton instances
_encryption_manager: Optional[EncryptionManager] = None
_challenge_hasher: Optional[ChallengeHasher] = None
_encryption_lock = Lock()
_hasher_lock = Lock()


def get_encryption_manager(master_key: Optional[str] = None) -> EncryptionManager:
    """
    Get or create the singleton EncryptionManager instance (thread-safe).

    Args:
        master_key: Master key (falls back to LEDGER_MASTER_KEY)

    Raises:
        ValueError: If no master key is available on first use
    """
    global _encryption_manager

    # Double-checked locking
    if _encryption_manager is None:
        with _encryption_lock:
            if _encryption_manager is None:
                settings = get_settings()
                if master_key is None:
                    master_key = settings.master_key
                if master_key is None:
                    raise ValueError("A master key is required to initialize encryption")
                _encryption_manager = EncryptionManager(master_key, settings.keys_dir)

    return _encryption_manager


def get_challenge_hasher() -> ChallengeHasher:
    """Get or create the singleton ChallengeHasher instance (thread-safe)."""
    global _challenge_hasher

    if _challenge_hasher is None:
        with _hasher_lock:
            if _challenge_hasher is None:
                _challenge_hasher = ChallengeHasher(digits=get_settings().otp_digits)

    return _challenge_hasher


def reset_managers():
    """Reset singleton instances (for testing purposes)."""
    global _encryption_manager, _challenge_hasher
    _encryption_manager = None
    _challenge_hasher = None
