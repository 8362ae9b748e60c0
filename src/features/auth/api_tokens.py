"""Personal API token generation and hashing."""

import hashlib
import re
import secrets

# 32 random bytes, hex encoded. Hex tokens never contain the dots of a JWT.
API_TOKEN_BYTES = 32
_API_TOKEN_PATTERN = re.compile(r"^[a-f0-9]{32,128}$", re.IGNORECASE)


def generate_api_token() -> str:
    return secrets.token_hex(API_TOKEN_BYTES)


def hash_api_token(token: str) -> str:
    """SHA-256 digest used to look a token up.

    API tokens carry 256 bits of entropy, so a fast deterministic hash is
    enough; Argon2 stays reserved for passwords.
    """
    return hashlib.sha256(token.lower().encode("ascii")).hexdigest()


def looks_like_api_token(token: str) -> bool:
    """Tell API tokens apart from JWT access tokens."""
    return "." not in token


def is_well_formed_api_token(token: str) -> bool:
    return bool(_API_TOKEN_PATTERN.match(token))
