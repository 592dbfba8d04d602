"""
Preimage verification: the proof that a Lightning payment settled.

A payment hash is sha256(preimage). Both travel as 64-character hex strings.
"""
import hashlib
import hmac
import re
import secrets

from core.errors import validation_error

HASH_HEX_LENGTH = 64
_HEX32_RE = re.compile(r'^[0-9a-fA-F]{64}$')


def is_hex32(value) -> bool:
    """True if value is a 64-character hex string (32 bytes)."""
    return isinstance(value, str) and bool(_HEX32_RE.match(value))


def require_payment_hash(payment_hash):
    if not is_hex32(payment_hash):
        raise validation_error(
            "Payment hash must be 64 hexadecimal characters",
            'INVALID_PAYMENT_HASH_FORMAT',
        )
    return payment_hash.lower()


def require_preimage(preimage):
    if not is_hex32(preimage):
        raise validation_error(
            "Preimage must be 64 hexadecimal characters (32 bytes)",
            'INVALID_PREIMAGE_FORMAT',
        )
    return preimage.lower()


def hash_preimage(preimage: str) -> str:
    return hashlib.sha256(bytes.fromhex(require_preimage(preimage))).hexdigest()


def verify_preimage(preimage: str, payment_hash: str) -> bool:
    """Check sha256(preimage) == payment_hash.

    Raises a validation error for malformed input; a well-formed mismatch
    returns False.
    """
    expected = require_payment_hash(payment_hash)
    computed = hash_preimage(preimage)
    return hmac.compare_digest(computed, expected)


def generate_preimage() -> tuple:
    """Return a fresh (preimage, payment_hash) pair."""
    preimage = secrets.token_hex(32)
    return preimage, hash_preimage(preimage)
