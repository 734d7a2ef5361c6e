from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authgate.logging import get_logger
from authgate.policy import DEFAULT_POLICY, OrganizationSecurityPolicy, resolve_policy
from authgate.service.audit import RISK_ACCOUNT_UNLOCKED, RiskAuditLog, SecurityEventInput
from authgate.service.errors import NotFoundError
from authgate.service.store import CredentialStore
from authgate.storage.models import AccountStatus, EventCategory, Identity

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    reason: Optional[str] = None
    locked_until: Optional[datetime] = None


class LockoutPolicyEngine:
    """Failed-attempt counting and lock decisions.

    Expiry is lazy: a lock whose ``locked_until`` has passed is treated as
    released when it is next checked, and the following failure starts a
    fresh count.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: RiskAuditLog,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        default_policy: OrganizationSecurityPolicy = DEFAULT_POLICY,
    ) -> None:
        self.store = store
        self.audit = audit
        self.default_policy = default_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_lockout(self, email: str) -> LockoutStatus:
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            return LockoutStatus(locked=False)
        return self.status_for(identity)

    def status_for(self, identity: Identity) -> LockoutStatus:
        locked_until = identity.locked_until
        if locked_until is not None and locked_until > self._clock():
            return LockoutStatus(
                locked=True,
                reason=f"account locked until {locked_until.isoformat()}",
                locked_until=locked_until,
            )
        return LockoutStatus(locked=False)

    def record_failure(self, email: str, *, attempt_id: Optional[str] = None) -> Optional[Identity]:
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            return None
        policy = resolve_policy(self.store, identity, self.default_policy)
        now = self._clock()
        updated = self.store.record_failed_attempt(
            identity.id,
            now=now,
            max_attempts=policy.max_failed_attempts,
            lockout_until=now + timedelta(minutes=policy.lockout_duration_minutes),
            attempt_id=attempt_id,
        )
        if updated.locked_until is not None and updated.locked_until > now:
            logger.warning(
                "account_locked",
                user_id=updated.id,
                failed_attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
        return updated

    def record_success(self, email: str) -> Optional[Identity]:
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            return None
        if (
            identity.failed_login_attempts == 0
            and identity.locked_until is None
            and identity.account_status != AccountStatus.LOCKED
        ):
            return identity
        return self.store.reset_failed_attempts(identity.id)

    def unlock(self, user_id: str, *, unlocked_by: Optional[str] = None) -> Identity:
        """Administrative release of a lock before it expires."""
        if self.store.get_identity(user_id) is None:
            raise NotFoundError("identity not found", detail={"user_id": user_id})
        identity = self.store.reset_failed_attempts(user_id)
        self.audit.record(
            user_id,
            None,
            SecurityEventInput(
                event_type="account_unlocked",
                description="Account lock cleared by administrator",
                success=True,
                risk_score=RISK_ACCOUNT_UNLOCKED,
                category=EventCategory.ADMIN_ACTION,
                details={"unlocked_by": unlocked_by},
            ),
        )
        logger.info("account_unlocked", user_id=user_id, unlocked_by=unlocked_by)
        return identity
