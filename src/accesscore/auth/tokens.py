"""Opaque credential primitives — session tokens, invitation tokens, API key secrets.

Learn: Sessions are opaque random tokens looked up in the database rather
than signed JWTs. That keeps revocation immediate: deleting the row (or
disabling the user) ends access on the very next request.

All randomness comes from the `secrets` module (CSPRNG). Comparisons go
through hmac.compare_digest so equal-length mismatches take the same time.
"""

import hashlib
import hmac
import secrets

SESSION_TOKEN_BYTES = 48
INVITATION_TOKEN_BYTES = 32
API_KEY_SECRET_BYTES = 32

ORG_KEY_TAG = "osk"
PROJECT_KEY_TAG = "psk"


def new_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def new_invitation_token() -> str:
    return secrets.token_hex(INVITATION_TOKEN_BYTES)


def new_api_key_secret(tag: str) -> str:
    """Build a key of the form "{tag}-{64 hex chars}"."""
    return f"{tag}-{secrets.token_hex(API_KEY_SECRET_BYTES)}"


def key_prefix(secret: str, tag: str, prefix_chars: int) -> str:
    """Displayable lookup prefix: the tag, the dash, and N body characters."""
    return secret[: len(tag) + 1 + prefix_chars]


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
