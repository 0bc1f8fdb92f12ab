"""PKCE (RFC 7636) verifier/challenge pairs and anti-CSRF state tokens.

Every random value here is a bearer secret for the rest of the login flow,
so only :mod:`secrets` is used. Nothing in this module logs its output.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from auth.errors import SecureRandomUnavailableError

VERIFIER_LENGTH = 128
STATE_LENGTH = 16
UNRESERVED_CHARS = string.ascii_letters + string.digits + "-._~"


def _random_string(length: int) -> str:
    try:
        return "".join(secrets.choice(UNRESERVED_CHARS) for _ in range(length))
    except NotImplementedError as error:
        # os.urandom has no entropy source on this platform.
        raise SecureRandomUnavailableError() from error


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be 43-128 characters")
    return _random_string(length)


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_challenge_pair() -> tuple[str, str]:
    """Return ``(verifier, challenge)`` for an S256 authorization request."""
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier)


def generate_anti_csrf_token(length: int = STATE_LENGTH) -> str:
    return _random_string(length)
