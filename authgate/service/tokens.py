from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.storage.models import Identity

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PENDING_2FA = "2fa_pending"


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    session_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class PendingToken:
    token: str
    expires_at: datetime


class TokenIssuer:
    """Signs and checks HS256 tokens for sessions and pending 2FA logins."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self, identity: Identity, *, session_id: Optional[str] = None) -> AuthTokens:
        now = self._clock()
        sid = session_id or str(uuid.uuid4())
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        access_token = self._encode_jwt(
            self._claims(identity, ACCESS, access_exp, sid=sid)
        )
        refresh_token = self._encode_jwt(
            self._claims(identity, REFRESH, refresh_exp, sid=sid)
        )
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=access_exp,
            session_id=sid,
        )

    def issue_pending(self, identity: Identity) -> PendingToken:
        """Half-authenticated token proving the password step for one user."""
        exp = self._clock() + timedelta(minutes=self.settings.pending_2fa_ttl_minutes)
        return PendingToken(
            token=self._encode_jwt(self._claims(identity, PENDING_2FA, exp)),
            expires_at=exp,
        )

    def decode(self, token: str, *, expected_type: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        if payload.get("token_type") != expected_type:
            logger.warning(
                "token_type_mismatch",
                expected=expected_type,
                got=payload.get("token_type"),
            )
            return None
        return payload

    def _claims(
        self,
        identity: Identity,
        token_type: str,
        expires_at: datetime,
        *,
        sid: Optional[str] = None,
    ) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity.id,
            "org": identity.organization_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "exp": int(expires_at.timestamp()),
        }
        if sid:
            claims["sid"] = sid
        return claims

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        if not token.isascii():
            logger.warning("jwt_non_ascii_token")
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload
