from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.config import Settings
from authgate.logging import get_logger, mask_email
from authgate.policy import (
    DEFAULT_POLICY,
    OrganizationSecurityPolicy,
    default_policy_from_settings,
    resolve_policy,
)
from authgate.service.audit import (
    RISK_2FA_DISABLE_FAILED,
    RISK_2FA_FAILED,
    RISK_LOGIN_BLOCKED,
    RISK_LOGIN_FAILED,
    RISK_NONE,
    RISK_PENDING_2FA,
    RiskAuditLog,
    SecurityEventInput,
)
from authgate.service.crypto import SecretCipher, constant_time_equals, sha256_hex
from authgate.service.errors import AuthenticationError, NotFoundError, ValidationError
from authgate.service.lockout import LockoutPolicyEngine
from authgate.service.sessions import DeviceInfo, SessionManager
from authgate.service.store import CredentialStore
from authgate.service.tokens import ACCESS, PENDING_2FA, AuthTokens, TokenIssuer
from authgate.service.two_factor import TwoFactorManager, TwoFactorSetup, TwoFactorStatus
from authgate.storage.errors import StoreUnavailable
from authgate.storage.models import AccountStatus, Identity

logger = get_logger(__name__)

SERVICE_ERROR_MESSAGE = "Authentication service error"
PASSWORD_ALGO = "argon2id"


class AuthState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    PASSWORD_VERIFIED = "password_verified"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    SESSION_ESTABLISHED = "session_established"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AuthError:
    code: str
    message: str


@dataclass
class SignInResult:
    state: AuthState
    user: Optional[Identity] = None
    session_id: Optional[str] = None
    tokens: Optional[AuthTokens] = None
    pending_token: Optional[str] = None
    error: Optional[AuthError] = None
    requires_2fa: bool = False
    requires_2fa_setup: bool = False

    @classmethod
    def rejected(cls, code: str, message: str) -> "SignInResult":
        return cls(state=AuthState.REJECTED, error=AuthError(code, message))


@dataclass
class TwoFactorResult:
    success: bool
    state: AuthState
    session_id: Optional[str] = None
    tokens: Optional[AuthTokens] = None
    error: Optional[AuthError] = None

    @classmethod
    def rejected(cls, code: str, message: str) -> "TwoFactorResult":
        return cls(success=False, state=AuthState.REJECTED, error=AuthError(code, message))


@dataclass(frozen=True)
class AccessContext:
    user_id: str
    session_id: str
    claims: Dict[str, Any] = field(default_factory=dict)


class AuthenticationGateway:
    """End-to-end sign-in protocol over the lockout, 2FA and session services.

    Policy rejections come back as result objects carrying an error code;
    only programming errors and boundary misuse raise. Every sign-in and
    2FA verification path records exactly one decision event.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        audit: RiskAuditLog,
        lockout: LockoutPolicyEngine,
        two_factor: TwoFactorManager,
        sessions: SessionManager,
        tokens: TokenIssuer,
        default_policy: OrganizationSecurityPolicy = DEFAULT_POLICY,
        two_factor_max_attempts: int = 5,
        two_factor_lockout: timedelta = timedelta(minutes=5),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.lockout = lockout
        self.two_factor = two_factor
        self.sessions = sessions
        self.tokens = tokens
        self.default_policy = default_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._consumed_pending: Dict[str, float] = {}
        self._pending_lock = threading.Lock()
        self.two_factor_max_attempts = two_factor_max_attempts
        self.two_factor_lockout = two_factor_lockout
        # user_id -> (count, window_start) and user_id -> paused_until
        self._two_factor_attempts: Dict[str, Tuple[int, datetime]] = {}
        self._two_factor_lockouts: Dict[str, datetime] = {}

    @classmethod
    def from_settings(
        cls,
        store: CredentialStore,
        settings: Settings,
        *,
        cipher: Optional[SecretCipher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "AuthenticationGateway":
        """Wire every component from one settings object and one store."""
        policy = default_policy_from_settings(settings)
        cipher = cipher or SecretCipher(settings.resolve_encryption_key())
        audit = RiskAuditLog(store, clock=clock)
        return cls(
            store,
            audit=audit,
            lockout=LockoutPolicyEngine(store, audit, clock=clock, default_policy=policy),
            two_factor=TwoFactorManager(
                store,
                audit,
                cipher,
                issuer=settings.totp_issuer,
                window_steps=settings.totp_window_steps,
                backup_code_count=settings.backup_code_count,
                clock=clock,
            ),
            sessions=SessionManager(store, audit, clock=clock, default_policy=policy),
            tokens=TokenIssuer(settings, clock=clock),
            default_policy=policy,
            two_factor_max_attempts=settings.two_factor_max_attempts,
            two_factor_lockout=timedelta(minutes=settings.two_factor_lockout_minutes),
            clock=clock,
        )

    # -- sign-in ----------------------------------------------------------

    def sign_in(
        self,
        email: str,
        password: str,
        device_info: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
        *,
        attempt_id: Optional[str] = None,
    ) -> SignInResult:
        user_agent = device_info.user_agent if device_info else None
        identity: Optional[Identity] = None
        try:
            status = self.lockout.check_lockout(email)
            identity = self.store.get_identity_by_email(email)
            if status.locked:
                self._record(
                    identity.id if identity else None,
                    None,
                    "login_attempt_blocked",
                    "Login attempt blocked due to account lockout",
                    success=False,
                    risk_score=RISK_LOGIN_BLOCKED,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    failure_reason=status.reason,
                    details={"locked_until": status.locked_until.isoformat()},
                )
                return SignInResult.rejected("account_locked", status.reason)

            if identity is None or not self.verify_password(identity.id, password):
                self.lockout.record_failure(email, attempt_id=attempt_id)
                self._record(
                    identity.id if identity else None,
                    None,
                    "login_failed",
                    "Failed login attempt",
                    success=False,
                    risk_score=RISK_LOGIN_FAILED,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    failure_reason="invalid credentials",
                    details={"email": mask_email(email)},
                )
                return SignInResult.rejected("invalid_credentials", "Invalid email or password")

            identity = self.lockout.record_success(email) or identity
            policy = resolve_policy(self.store, identity, self.default_policy)
            if self._is_inactive(identity, policy):
                reason = f"account {identity.account_status.value}"
                self._record(
                    identity.id,
                    None,
                    "login_failed",
                    "Login refused for inactive account",
                    success=False,
                    risk_score=RISK_LOGIN_FAILED,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    failure_reason=reason,
                )
                return SignInResult.rejected("account_inactive", "Account is not active")

            if identity.two_factor_enabled:
                pending = self.tokens.issue_pending(identity)
                self._record(
                    identity.id,
                    None,
                    "login_password_success_pending_2fa",
                    "Password authentication successful, pending 2FA verification",
                    success=True,
                    risk_score=RISK_PENDING_2FA,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                return SignInResult(
                    state=AuthState.TWO_FACTOR_REQUIRED,
                    user=identity,
                    pending_token=pending.token,
                    requires_2fa=True,
                )

            session_id, tokens = self._establish_session(identity, device_info, ip_address)
            self._record(
                identity.id,
                session_id,
                "login_success",
                "Successful login",
                success=True,
                risk_score=RISK_NONE,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return SignInResult(
                state=AuthState.SESSION_ESTABLISHED,
                user=identity,
                session_id=session_id,
                tokens=tokens,
                requires_2fa_setup=policy.requires_two_factor(identity.role),
            )
        except StoreUnavailable as exc:
            logger.error("sign_in_store_unavailable", error=str(exc), operation=exc.operation)
            self._record(
                identity.id if identity else None,
                None,
                "login_error",
                "Sign-in aborted by a backend failure",
                success=False,
                risk_score=RISK_NONE,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="service_error",
            )
            return SignInResult.rejected("service_error", SERVICE_ERROR_MESSAGE)

    def verify_two_factor(
        self,
        user_id: str,
        token: str,
        pending_session: Optional[str],
        device_info: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
    ) -> TwoFactorResult:
        """Complete a sign-in held at the 2FA step; creates the session on success."""
        user_agent = device_info.user_agent if device_info else None

        def reject(code: str, message: str, reason: str) -> TwoFactorResult:
            self._record(
                user_id,
                None,
                "2fa_verification_failed",
                "Invalid 2FA token provided",
                success=False,
                risk_score=RISK_2FA_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason=reason,
            )
            return TwoFactorResult.rejected(code, message)

        claimed: Optional[Dict[str, Any]] = None
        try:
            claims = (
                self.tokens.decode(pending_session, expected_type=PENDING_2FA)
                if pending_session
                else None
            )
            if claims is None or claims.get("sub") != user_id:
                return reject(
                    "invalid_pending_session",
                    "2FA session expired or invalid",
                    "invalid pending session",
                )
            if self._pending_already_used(claims):
                return reject(
                    "invalid_pending_session",
                    "2FA session expired or invalid",
                    "pending session already used",
                )
            identity = self.store.get_identity(user_id)
            if identity is None or not identity.two_factor_enabled:
                return reject("two_factor_not_configured", "2FA not configured", "2fa not configured")
            if self._two_factor_paused(user_id):
                return reject(
                    "account_locked",
                    "Too many failed 2FA attempts, try again later",
                    "2fa attempts exhausted",
                )
            # Claim the pending token before a backup code can be spent on it
            if not self._consume_pending(claims):
                return reject(
                    "invalid_pending_session",
                    "2FA session expired or invalid",
                    "pending session already used",
                )
            claimed = claims
            outcome = self.two_factor.verify(user_id, token)
            if not outcome.valid:
                if self._record_two_factor_failure(user_id):
                    # The pending token stays spent; the caller must sign in again
                    return reject(
                        "account_locked",
                        "Too many failed 2FA attempts, try again later",
                        "2fa attempts exhausted",
                    )
                self._release_pending(claimed)
                return reject("invalid_2fa_token", "Invalid 2FA token", "invalid token")
            self._clear_two_factor_failures(user_id)

            session_id, tokens = self._establish_session(identity, device_info, ip_address)
            claimed = None
            self._record(
                user_id,
                session_id,
                "2fa_verification_success",
                "Successful 2FA verification",
                success=True,
                risk_score=RISK_NONE,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"token_type": outcome.method},
            )
            return TwoFactorResult(
                success=True,
                state=AuthState.SESSION_ESTABLISHED,
                session_id=session_id,
                tokens=tokens,
            )
        except StoreUnavailable as exc:
            if claimed is not None:
                self._release_pending(claimed)
            logger.error("2fa_store_unavailable", error=str(exc), operation=exc.operation)
            self._record(
                user_id,
                None,
                "2fa_verification_error",
                "2FA verification aborted by a backend failure",
                success=False,
                risk_score=RISK_NONE,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="service_error",
            )
            return TwoFactorResult.rejected("service_error", SERVICE_ERROR_MESSAGE)

    # -- two-factor management -------------------------------------------

    def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        return self.two_factor.setup(user_id)

    def verify_and_enable_2fa(self, user_id: str, token: str) -> bool:
        return self.two_factor.verify_and_enable(user_id, token)

    def disable_2fa(self, user_id: str, current_password: str) -> bool:
        """Turn 2FA off after re-proving the account password."""
        if not self.verify_password(user_id, current_password):
            self._record(
                user_id,
                None,
                "2fa_disable_failed",
                "2FA disable refused: password re-verification failed",
                success=False,
                risk_score=RISK_2FA_DISABLE_FAILED,
                failure_reason="invalid password",
            )
            return False
        return self.two_factor.disable(user_id)

    def two_factor_status(self, user_id: str) -> TwoFactorStatus:
        return self.two_factor.status(user_id)

    # -- sessions ---------------------------------------------------------

    def terminate_session(self, session_id: str, reason: str = "manual_logout") -> bool:
        return self.sessions.terminate(session_id, reason)

    def validate_session_security(self, user_id: str, session_id: str) -> bool:
        return self.sessions.validate_session_security(user_id, session_id)

    def authenticate(self, access_token: Optional[str]) -> AccessContext:
        """Resolve a bearer access token to its live session.

        Pending-2FA and refresh tokens are refused, as are tokens whose
        session was terminated.
        """
        claims = self.tokens.decode(access_token, expected_type=ACCESS) if access_token else None
        if claims is None:
            raise AuthenticationError("invalid or expired access token")
        session = self.store.get_session(claims.get("sid", ""))
        if (
            session is None
            or session.user_id != claims.get("sub")
            or not session.is_active(self._clock())
            or not session.session_token_hash
            or not constant_time_equals(session.session_token_hash, sha256_hex(access_token))
        ):
            raise AuthenticationError("session is no longer active")
        return AccessContext(user_id=session.user_id, session_id=session.id, claims=claims)

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    # -- passwords --------------------------------------------------------

    def set_password(self, user_id: str, password: str) -> None:
        """Hash and store a password that satisfies the organization's policy."""
        identity = self.store.get_identity(user_id)
        if identity is None:
            raise NotFoundError("identity not found", detail={"user_id": user_id})
        policy = resolve_policy(self.store, identity, self.default_policy)
        problems = policy.password_policy.violations(password)
        if problems:
            raise ValidationError(
                "password does not meet policy", detail={"violations": problems}
            )
        self.store.save_password(user_id, self._pwd_hasher.hash(password), PASSWORD_ALGO)
        logger.info("password_set", user_id=user_id)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.info("password_verification_failed", user_id=user_id)
            return False

    # -- internals --------------------------------------------------------

    def _is_inactive(self, identity: Identity, policy: OrganizationSecurityPolicy) -> bool:
        if identity.account_status in (AccountStatus.INACTIVE, AccountStatus.SUSPENDED):
            return True
        return (
            identity.account_status == AccountStatus.PENDING_VERIFICATION
            and policy.require_email_verification
        )

    def _establish_session(
        self,
        identity: Identity,
        device_info: Optional[DeviceInfo],
        ip_address: Optional[str],
    ) -> Tuple[str, AuthTokens]:
        tokens = self.tokens.issue(identity)
        session_id = self.sessions.create_session(identity.id, tokens, device_info, ip_address)
        self.sessions.validate_concurrency(identity.id, keep_session_id=session_id)
        return session_id, tokens

    def _pending_already_used(self, claims: Dict[str, Any]) -> bool:
        with self._pending_lock:
            return claims.get("jti") in self._consumed_pending

    def _consume_pending(self, claims: Dict[str, Any]) -> bool:
        """Mark a pending token spent; False if another request already spent it."""
        now_ts = self._clock().timestamp()
        jti = claims.get("jti", "")
        with self._pending_lock:
            self._consumed_pending = {
                key: exp for key, exp in self._consumed_pending.items() if exp > now_ts
            }
            if jti in self._consumed_pending:
                return False
            self._consumed_pending[jti] = float(claims.get("exp", 0))
            return True

    def _release_pending(self, claims: Dict[str, Any]) -> None:
        with self._pending_lock:
            self._consumed_pending.pop(claims.get("jti", ""), None)

    def _two_factor_paused(self, user_id: str) -> bool:
        now = self._clock()
        with self._pending_lock:
            paused_until = self._two_factor_lockouts.get(user_id)
            if paused_until and paused_until > now:
                logger.warning("2fa_locked_out", user_id=user_id)
                return True
            if paused_until:
                self._two_factor_lockouts.pop(user_id, None)
            return False

    def _record_two_factor_failure(self, user_id: str) -> bool:
        """Count a wrong code; True once the user has run out of attempts."""
        now = self._clock()
        with self._pending_lock:
            attempts, window_start = 1, now
            current = self._two_factor_attempts.get(user_id)
            if current:
                count, prev_start = current
                if now - prev_start < self.two_factor_lockout:
                    attempts, window_start = count + 1, prev_start
            if attempts < self.two_factor_max_attempts:
                self._two_factor_attempts[user_id] = (attempts, window_start)
                return False
            self._two_factor_attempts.pop(user_id, None)
            self._two_factor_lockouts[user_id] = now + self.two_factor_lockout
        logger.warning("2fa_lockout_triggered", user_id=user_id, attempts=attempts)
        return True

    def _clear_two_factor_failures(self, user_id: str) -> None:
        with self._pending_lock:
            self._two_factor_attempts.pop(user_id, None)

    def _record(
        self,
        user_id: Optional[str],
        session_id: Optional[str],
        event_type: str,
        description: str,
        *,
        success: bool,
        risk_score: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.record(
            user_id,
            session_id,
            SecurityEventInput(
                event_type=event_type,
                description=description,
                success=success,
                risk_score=risk_score,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason=failure_reason,
                details=details or {},
            ),
        )
