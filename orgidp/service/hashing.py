from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from orgidp.config import IPBindingMode
from orgidp.logging import get_logger

logger = get_logger(__name__)

# 32 bytes of entropy for codes and refresh tokens
TOKEN_BYTES = 32


def generate_opaque_token() -> str:
    """Random base64url (unpadded) credential suitable for codes and refresh tokens."""
    return base64.urlsafe_b64encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii").rstrip("=")


class CredentialHasher:
    """Keyed hashes for credential lookup and device binding.

    Lookup hashes are deterministic HMAC-SHA256 so a presented code or
    refresh token can be found by equality. Binding hashes use a separate
    salt and a domain prefix so a user-agent hash can never collide with
    an IP hash.
    """

    def __init__(
        self,
        secret: str,
        *,
        binding_salt: Optional[str] = None,
        ip_binding_mode: IPBindingMode = IPBindingMode.EXACT,
    ) -> None:
        if not secret:
            raise ValueError("hash secret must not be empty")
        self._secret = secret.encode()
        self._binding_salt = (binding_salt or secret).encode()
        self.ip_binding_mode = IPBindingMode(ip_binding_mode)
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def lookup_hash(self, value: str) -> str:
        return hmac.new(self._secret, value.encode(), hashlib.sha256).hexdigest()

    def _binding_hash(self, domain: str, value: str) -> str:
        return hmac.new(
            self._binding_salt, f"{domain}:{value}".encode(), hashlib.sha256
        ).hexdigest()

    def bind_user_agent(self, user_agent: Optional[str]) -> str:
        return self._binding_hash("ua", user_agent or "")

    def bind_ip(self, ip: Optional[str]) -> str:
        return self._binding_hash("ip", self._normalize_ip(ip))

    def _normalize_ip(self, ip: Optional[str]) -> str:
        raw = (ip or "").strip()
        try:
            addr = ipaddress.ip_address(raw)
        except ValueError:
            # Unparseable addresses still bind, by exact text
            return raw
        if self.ip_binding_mode is IPBindingMode.SUBNET:
            prefix = 24 if addr.version == 4 else 64
            return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))
        return str(addr)

    @staticmethod
    def matches(expected: str, presented: str) -> bool:
        return hmac.compare_digest(expected.encode(), presented.encode())

    def hash_client_secret(self, client_secret: str) -> str:
        return self._pwd_hasher.hash(client_secret)

    def verify_client_secret(self, stored_hash: Optional[str], client_secret: Optional[str]) -> bool:
        if not stored_hash or not client_secret:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, client_secret)
        except (InvalidHash, VerificationError):
            logger.warning("client_secret_verification_failed")
            return False
