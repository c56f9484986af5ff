from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional, Protocol

from orgidp.logging import get_logger

logger = get_logger(__name__)


class Signer(Protocol):
    # Seconds past ``exp`` during which decode still accepts a token
    leeway_seconds: int

    def sign(self, claims: dict[str, Any]) -> str: ...

    def decode(
        self,
        token: str,
        *,
        audience: Optional[str] = None,
        verify_exp: bool = True,
    ) -> Optional[dict[str, Any]]: ...


class JWTSigner:
    """HS256 JWS signer for access tokens.

    Every token carries ``iss = {issuer_base_url}/{client_id}`` and
    ``aud = client_id``; ``decode`` rejects tokens where the two disagree.
    """

    def __init__(
        self, secret: str, issuer_base_url: str, *, leeway_seconds: int = 120
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer_base_url = issuer_base_url.rstrip("/")
        # Allowance for small clock skew across nodes
        self.leeway_seconds = leeway_seconds

    def issuer_for(self, client_id: str) -> str:
        return f"{self.issuer_base_url}/{client_id}"

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(
        self,
        token: str,
        *,
        audience: Optional[str] = None,
        verify_exp: bool = True,
    ) -> Optional[dict[str, Any]]:
        """Return verified claims, or None when the token cannot be trusted."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(
            self._signature(signing_input).encode(), sig_b64.encode()
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        aud = payload.get("aud")
        if not isinstance(aud, str) or payload.get("iss") != self.issuer_for(aud):
            return None
        if audience is not None and aud != audience:
            return None
        if verify_exp:
            exp = payload.get("exp")
            try:
                exp_ts = float(exp)
            except (TypeError, ValueError):
                return None
            if exp_ts <= time.time() - self.leeway_seconds:
                return None
        return payload
