"""
Security primitives: public token hashing, OTP code hashing, content hashes.
"""
import hashlib
import logging
import secrets
from typing import Optional, Tuple

from signauth.config import get_settings

logger = logging.getLogger(__name__)

OTP_CODE_LENGTH = 6


def hash_public_token(token: str, salt: Optional[str] = None) -> str:
    """
    Hash a public signing token with the server-wide salt.

    Only this hash is stored; lookups go through it so the database never
    compares partial plaintext tokens.
    """
    if salt is None:
        salt = get_settings().signing_token_salt
    return hashlib.sha256(f"{salt}{token}".encode()).hexdigest()


def generate_public_token(salt: Optional[str] = None) -> Tuple[str, str]:
    """
    Generate a new public token.

    Returns:
        Tuple of (plain_token, token_hash)
    """
    token = secrets.token_urlsafe(32)
    return token, hash_public_token(token, salt)


def tokens_match(plain_token: str, stored_hash: str, salt: Optional[str] = None) -> bool:
    """Constant-time check of a plaintext token against a stored hash."""
    return secrets.compare_digest(hash_public_token(plain_token, salt), stored_hash)


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    """Uniformly random numeric code, zero padded (000000-999999)."""
    return str(secrets.randbelow(10 ** length)).zfill(length)


def generate_salt() -> str:
    return secrets.token_hex(16)


def hash_otp_code(code: str, salt: str, pepper: Optional[str] = None) -> str:
    """
    One-way hash of an OTP code.

    ``salt`` is per challenge and stored next to the hash; ``pepper`` is the
    server secret and never stored with the challenge.
    """
    if pepper is None:
        pepper = get_settings().otp_pepper
    return hashlib.sha256(f"{pepper}:{salt}:{code}".encode()).hexdigest()


def otp_code_matches(code: str, salt: str, stored_hash: str, pepper: Optional[str] = None) -> bool:
    return secrets.compare_digest(hash_otp_code(code, salt, pepper), stored_hash)


def compute_bytes_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hashes_match(expected: Optional[str], actual: Optional[str]) -> bool:
    if not expected or not actual:
        return False
    return secrets.compare_digest(expected, actual)
