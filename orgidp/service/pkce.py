"""PKCE (RFC 7636) verification and helpers.

Only the S256 transformation is accepted; ``plain`` and anything else fail
closed. Verifiers and challenges are never logged.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Tuple

METHOD_S256 = "S256"

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


class PKCEVerificationError(Exception):
    """The code verifier does not satisfy the stored challenge."""


def generate_code_verifier() -> str:
    """Return a 43 character verifier carrying 256 bits of entropy."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair() -> Tuple[str, str]:
    """Return ``(verifier, challenge)``."""
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier)


def verify(code_verifier: str, stored_challenge: str, method: str) -> None:
    """Check ``code_verifier`` against ``stored_challenge``.

    Raises PKCEVerificationError on any mismatch, on a method other than
    S256, or on a verifier outside the 43-128 character range.
    """
    if method != METHOD_S256:
        raise PKCEVerificationError("unsupported code_challenge_method")
    if not code_verifier or not stored_challenge:
        raise PKCEVerificationError("missing verifier or challenge")
    if not MIN_VERIFIER_LENGTH <= len(code_verifier) <= MAX_VERIFIER_LENGTH:
        raise PKCEVerificationError("code_verifier length out of range")
    try:
        computed = generate_code_challenge(code_verifier)
    except UnicodeEncodeError as exc:
        raise PKCEVerificationError("code_verifier must be ASCII") from exc
    if not hmac.compare_digest(computed.encode(), stored_challenge.encode()):
        raise PKCEVerificationError("code_verifier does not match challenge")
