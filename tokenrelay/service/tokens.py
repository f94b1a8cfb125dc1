from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from tokenrelay.logging import get_logger
from tokenrelay.service.errors import (
    KindMismatchError,
    MalformedTokenError,
    SignatureInvalidError,
    TokenExpiredError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = frozenset({ACCESS, REFRESH})

_ALGORITHM = "HS256"
# Registered claims the codec owns; callers cannot override them via extra claims
_RESERVED_CLAIMS = frozenset({"iss", "aud", "sub", "iat", "exp", "jti", "token_type"})


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    claims: Dict[str, Any] = field(default_factory=dict)


class TokenCodec:
    """Issues and verifies HS256-signed, JWT-shaped access and refresh tokens.

    ``keys`` maps key ids to secrets. Tokens are signed with ``active_kid``;
    any key in the set verifies, so retiring or adding a verification key is a
    configuration change.
    """

    def __init__(
        self,
        keys: Mapping[str, str],
        active_kid: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if active_kid not in keys or not keys[active_kid]:
            raise ValueError(f"signing key '{active_kid}' missing from key set")
        self._keys = {kid: secret.encode() for kid, secret in keys.items() if secret}
        self.active_kid = active_kid
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TokenCodec":
        return cls(
            settings.signing_keys(),
            settings.jwt_key_id,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
            **kwargs,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        subject: str,
        kind: str,
        ttl: timedelta,
        claims: Optional[Mapping[str, Any]] = None,
    ) -> str:
        token, _ = self.mint(subject, kind, ttl, claims)
        return token

    def mint(
        self,
        subject: str,
        kind: str,
        ttl: timedelta,
        claims: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[str, TokenClaims]:
        """Like :meth:`issue` but also return the claims that were signed."""
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        if not subject:
            raise ValueError("subject is required")
        issued_at = int(self.clock())
        payload: Dict[str, Any] = {
            k: v for k, v in (claims or {}).items() if k not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": str(subject),
                "token_type": kind,
                "jti": str(uuid.uuid4()),
                "iat": issued_at,
                "exp": issued_at + int(ttl.total_seconds()),
            }
        )
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": self.active_kid}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._sign(signing_input, self._keys[self.active_kid])
        return f"{signing_input}.{signature}", self._to_claims(payload)

    def verify(self, token: str, expected_kind: str) -> TokenClaims:
        """Validate structure, signature, expiry and kind, in that order."""
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token is not a three-part JWT") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedTokenError("token segments are not valid JSON") from None
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise MalformedTokenError("token segments are not JSON objects")
        # Pin the algorithm to prevent algorithm confusion
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedTokenError("unsupported token algorithm")

        kid = header.get("kid", self.active_kid)
        if not isinstance(kid, str):
            raise MalformedTokenError("token key id is not a string")
        key = self._keys.get(kid)
        if key is None:
            raise SignatureInvalidError("token signed with an unknown key")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise SignatureInvalidError("token signature mismatch")
        if payload.get("iss") != self.issuer or not self._audience_matches(
            payload.get("aud")
        ):
            raise SignatureInvalidError("token not issued for this service")

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError("token has no subject")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("token has no valid expiry") from None
        if not (math.isfinite(exp_ts) and math.isfinite(iat_ts)):
            raise MalformedTokenError("token has no valid expiry")

        if exp_ts <= self.clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired")

        kind = payload.get("token_type")
        if kind != expected_kind:
            raise KindMismatchError(
                f"expected {expected_kind} token", detail={"presented": kind}
            )

        try:
            return self._to_claims(payload, issued_at=iat_ts, expires_at=exp_ts)
        except (OverflowError, OSError, ValueError):
            raise MalformedTokenError("token timestamps out of range") from None

    @staticmethod
    def _to_claims(
        payload: Mapping[str, Any],
        *,
        issued_at: Optional[float] = None,
        expires_at: Optional[float] = None,
    ) -> TokenClaims:
        iat = payload["iat"] if issued_at is None else issued_at
        exp = payload["exp"] if expires_at is None else expires_at
        return TokenClaims(
            subject=payload["sub"],
            kind=payload["token_type"],
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=str(payload.get("jti", "")),
            claims={k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS},
        )

    def _audience_matches(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False
