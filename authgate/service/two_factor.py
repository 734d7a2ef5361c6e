from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from authgate.logging import get_logger
from authgate.service.audit import (
    RISK_2FA_DISABLED,
    RISK_2FA_ENABLED,
    RISK_NONE,
    RiskAuditLog,
    SecurityEventInput,
)
from authgate.service.crypto import (
    SecretCipher,
    SecretDecryptionError,
    hash_backup_code,
)
from authgate.service.errors import ConflictError, NotFoundError
from authgate.service.store import CredentialStore
from authgate.storage.models import TwoFactorCredential

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20


def new_totp_secret() -> str:
    """160-bit shared secret, base32 without padding."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``timestamp``; empty string for an undecodable secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    window: int = 2,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept ``code`` if it matches any step within +/- ``window`` of ``timestamp``."""
    code = (code or "").strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_backup_codes(count: int) -> List[str]:
    return [secrets.token_hex(4) for _ in range(count)]


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    qr_payload: str
    backup_codes: List[str]
    manual_entry_key: str


@dataclass(frozen=True)
class VerificationOutcome:
    valid: bool
    method: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    configured: bool
    backup_codes_remaining: int


class TwoFactorManager:
    """TOTP enrollment and verification with single-use backup codes.

    A freshly set up credential stays unverified, and grants nothing, until
    ``verify_and_enable`` sees a valid code for it.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: RiskAuditLog,
        cipher: SecretCipher,
        *,
        issuer: str = "AuthGate",
        window_steps: int = 2,
        backup_code_count: int = 8,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.cipher = cipher
        self.issuer = issuer
        self.window_steps = window_steps
        self.backup_code_count = backup_code_count
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def setup(self, user_id: str) -> TwoFactorSetup:
        identity = self.store.get_identity(user_id)
        if identity is None:
            raise NotFoundError("identity not found", detail={"user_id": user_id})
        if identity.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = new_totp_secret()
        codes = generate_backup_codes(self.backup_code_count)
        self.store.upsert_two_factor(
            TwoFactorCredential(
                user_id=user_id,
                secret=self.cipher.encrypt(secret),
                backup_codes=[self.cipher.encrypt(code) for code in codes],
                backup_code_hashes=[hash_backup_code(code) for code in codes],
                created_at=self._clock(),
            )
        )
        self.audit.record(
            user_id,
            None,
            SecurityEventInput(
                event_type="2fa_setup_initiated",
                description="User initiated 2FA setup",
                success=True,
                risk_score=RISK_NONE,
            ),
        )
        return TwoFactorSetup(
            secret=secret,
            qr_payload=provisioning_uri(secret, identity.email, self.issuer),
            backup_codes=codes,
            manual_entry_key=" ".join(secret[i : i + 4] for i in range(0, len(secret), 4)),
        )

    def verify_and_enable(self, user_id: str, token: str) -> bool:
        credential = self.store.get_two_factor(user_id)
        if credential is None or credential.is_verified:
            logger.info("2fa_enable_without_pending_setup", user_id=user_id)
            return False
        secret = self._secret_for(credential)
        if secret is None or not self._totp_matches(secret, token):
            logger.info("2fa_enable_code_rejected", user_id=user_id)
            return False
        if not self.store.enable_two_factor(user_id, verified_at=self._clock()):
            return False
        self.audit.record(
            user_id,
            None,
            SecurityEventInput(
                event_type="2fa_enabled",
                description="User successfully enabled 2FA",
                success=True,
                risk_score=RISK_2FA_ENABLED,
            ),
        )
        return True

    def verify(self, user_id: str, token: str) -> VerificationOutcome:
        """Check a sign-in code: TOTP first, then an unused backup code."""
        credential = self.store.get_two_factor(user_id)
        if credential is None or not credential.is_verified:
            return VerificationOutcome(valid=False)
        token = (token or "").strip()
        if not token:
            return VerificationOutcome(valid=False)
        secret = self._secret_for(credential)
        now = self._clock()
        if secret is not None and self._totp_matches(secret, token):
            self.store.touch_two_factor(user_id, used_at=now)
            return VerificationOutcome(valid=True, method="totp")
        if self.store.consume_backup_code(user_id, hash_backup_code(token), used_at=now):
            remaining = credential.backup_codes_remaining - 1
            logger.info("backup_code_consumed", user_id=user_id, remaining=remaining)
            if remaining <= 2:
                logger.warning("backup_codes_low", user_id=user_id, remaining=remaining)
            return VerificationOutcome(valid=True, method="backup_code")
        return VerificationOutcome(valid=False)

    def disable(self, user_id: str) -> bool:
        if not self.store.disable_two_factor(user_id):
            return False
        self.audit.record(
            user_id,
            None,
            SecurityEventInput(
                event_type="2fa_disabled",
                description="User disabled 2FA",
                success=True,
                risk_score=RISK_2FA_DISABLED,
            ),
        )
        return True

    def status(self, user_id: str) -> TwoFactorStatus:
        identity = self.store.get_identity(user_id)
        if identity is None:
            raise NotFoundError("identity not found", detail={"user_id": user_id})
        credential = self.store.get_two_factor(user_id)
        return TwoFactorStatus(
            enabled=identity.two_factor_enabled,
            configured=credential is not None,
            backup_codes_remaining=credential.backup_codes_remaining if credential else 0,
        )

    def _secret_for(self, credential: TwoFactorCredential) -> Optional[str]:
        try:
            return self.cipher.decrypt(credential.secret)
        except SecretDecryptionError:
            logger.error("2fa_secret_unreadable", user_id=credential.user_id)
            return None

    def _totp_matches(self, secret: str, token: str) -> bool:
        return verify_totp(
            secret, token, self._clock().timestamp(), window=self.window_steps
        )
