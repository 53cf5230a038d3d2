"""
security.py: Share-link password hashing.

Current records store a PBKDF2-HMAC-SHA512 hash next to a random hex salt.
Records written before salts existed hold only base64(password); those are
still accepted and are rewritten to the salted format after a successful
verification (see access_control.py).
"""
import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import PBKDF2_ITERATIONS

logger = logging.getLogger(__name__)

SALT_BYTES = 16
KEY_LENGTH = 64


# ─── PASSWORD RECORD VARIANTS ─────────────────────────────────────

@dataclass(frozen=True)
class Unprotected:
    pass


@dataclass(frozen=True)
class LegacyPassword:
    encoded: str


@dataclass(frozen=True)
class SaltedPassword:
    hash: str
    salt: str


PasswordRecord = Union[Unprotected, LegacyPassword, SaltedPassword]


def password_record_from(password_hash: Optional[str], password_salt: Optional[str]) -> PasswordRecord:
    """Classify stored hash/salt columns into exactly one record variant."""
    if not password_hash:
        return Unprotected()
    if not password_salt:
        return LegacyPassword(encoded=password_hash)
    return SaltedPassword(hash=password_hash, salt=password_salt)


# ─── HASH / VERIFY ─────────────────────────────────────

def _kdf(salt: str) -> PBKDF2HMAC:
    # The hex salt string itself is the KDF salt, so existing records stay verifiable
    return PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    """Returns (hex_hash, hex_salt). A fresh 16-byte salt is generated when none is given."""
    if not salt:
        salt = secrets.token_hex(SALT_BYTES)
    key = _kdf(salt).derive(password.encode("utf-8"))
    return key.hex(), salt


def verify_password(password: str, password_hash: str, salt: str) -> bool:
    """Constant-time check of password against a salted hash. Never raises; returns False on error."""
    try:
        expected = bytes.fromhex(password_hash)
        _kdf(salt).verify(password.encode("utf-8"), expected)
        return True
    except InvalidKey:
        return False
    except Exception as e:
        logger.error(f"Error comparing password hashes: {type(e).__name__}")
        return False


def encode_legacy_password(password: str) -> str:
    return base64.b64encode(password.encode("utf-8")).decode("ascii")


def verify_legacy_password(password: str, encoded: str) -> bool:
    """Check against a pre-salt base64 record."""
    try:
        candidate = encode_legacy_password(password)
        return constant_time.bytes_eq(candidate.encode("ascii"), encoded.encode("ascii"))
    except (UnicodeEncodeError, binascii.Error, AttributeError):
        return False


def verify_record(password: str, record: PasswordRecord) -> bool:
    if isinstance(record, SaltedPassword):
        return verify_password(password, record.hash, record.salt)
    if isinstance(record, LegacyPassword):
        return verify_legacy_password(password, record.encoded)
    if isinstance(record, Unprotected):
        # Protected group with nothing stored: nothing can match
        return False
    raise TypeError(f"Unknown password record: {record!r}")


def create_password_protection(password: Optional[str]) -> dict:
    """Protection columns for a new share. An empty password means unprotected."""
    if not password:
        return {
            "is_password_protected": False,
            "password_hash": None,
            "password_salt": None,
        }
    password_hash, salt = hash_password(password)
    return {
        "is_password_protected": True,
        "password_hash": password_hash,
        "password_salt": salt,
    }
