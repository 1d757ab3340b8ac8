"""
API key generation and hashing utilities.

Security notes:
  • Keys look like {rk|wk|ak}_{live|test}_<64 hex>. The type prefix says
    what the key may do (read / write / admin); it grants nothing by itself.
  • Each key gets its own random salt; the stored digest is
    SHA-256(salt ‖ key). Keys are 256-bit random strings, so a fast hash is
    sufficient — no bcrypt/argon2 latency on every request.
  • generate_api_key() returns the raw key exactly once — the caller
    must display it to the user immediately. It is never stored.
"""

import hashlib
import hmac
import re
import secrets

KEY_PATTERN = re.compile(r"^(ak|wk|rk)_(live|test)_[0-9a-f]{64}$")

# "ak_live_" + 12 hex chars: enough entropy to index on, short enough to show
PREFIX_LENGTH = 20


def hash_api_key(raw_key: str, salt: str) -> str:
    """Return the hex digest stored for `raw_key` under `salt`."""
    return hashlib.sha256(salt.encode("utf-8") + raw_key.encode("utf-8")).hexdigest()


def digests_match(expected: str, actual: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(expected, actual)


def key_prefix(raw_key: str) -> str:
    return raw_key[:PREFIX_LENGTH]


def generate_api_key(type_code: str, environment: str) -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, salt, key_hash) — raw_key is shown once; salt and
        key_hash are stored.
    """
    random_part = secrets.token_hex(32)  # 64 hex chars = 256 bits
    raw_key = f"{type_code}_{environment}_{random_part}"
    salt = secrets.token_hex(16)
    return raw_key, salt, hash_api_key(raw_key, salt)
