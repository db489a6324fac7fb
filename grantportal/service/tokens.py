from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from grantportal.config import Settings
from grantportal.logging import get_logger
from grantportal.service.errors import InvalidCredentials

logger = get_logger(__name__)

# Claims the issuer owns; callers supply everything else
RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "jti", "typ"})


class TokenKind(str, Enum):
    ACCESS = "access"
    RENEWAL = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and verifies the access and renewal credentials.

    Both are compact HS256 JWTs, but each kind is signed with its own secret
    and stamped with its own ``typ`` so one can never be replayed as the
    other. Verification fails closed with a single ``InvalidCredentials``
    regardless of which check rejected the token.
    """

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self,
        *,
        access_secret: str,
        renewal_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        renewal_ttl: timedelta,
        leeway: timedelta = timedelta(0),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == renewal_secret:
            raise ValueError("access and renewal credentials need distinct secrets")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.RENEWAL: renewal_secret.encode(),
        }
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.RENEWAL: renewal_ttl}
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_access_secret,
            renewal_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            renewal_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        )

    def ttl(self, kind: TokenKind) -> timedelta:
        return self._ttls[kind]

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def mint(
        self,
        claims: Mapping[str, Any],
        kind: TokenKind,
        expires_in: Optional[timedelta] = None,
    ) -> str:
        clash = RESERVED_CLAIMS.intersection(claims)
        if clash:
            raise ValueError(f"reserved claims cannot be supplied: {', '.join(sorted(clash))}")
        now = self._clock()
        lifetime = expires_in if expires_in is not None else self._ttls[kind]
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + lifetime.total_seconds(),
            "jti": str(uuid.uuid4()),
            "typ": kind.value,
        }
        header_enc = _encode_segment(json.dumps(self._HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _reject(self, kind: TokenKind, reason: str) -> InvalidCredentials:
        logger.debug("token_rejected", kind=kind.value, reason=reason)
        return InvalidCredentials()

    def verify(self, token: Optional[str], kind: TokenKind) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise self._reject(kind, "missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._reject(kind, "malformed") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise self._reject(kind, "header_undecodable") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise self._reject(kind, "algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise self._reject(kind, "signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise self._reject(kind, "payload_undecodable") from None
        if not isinstance(payload, dict):
            raise self._reject(kind, "payload_shape")
        if payload.get("typ") != kind.value:
            raise self._reject(kind, "kind")
        if payload.get("iss") != self.issuer:
            raise self._reject(kind, "issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise self._reject(kind, "audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise self._reject(kind, "expiry_missing") from None
        if exp_ts + self.leeway.total_seconds() <= self._clock():
            raise self._reject(kind, "expired")
        return payload

    @staticmethod
    def strip_reserved(payload: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in RESERVED_CLAIMS}
