from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from authgate.policy import OrganizationSecurityPolicy
from authgate.storage.models import (
    AccountStatus,
    EventCategory,
    Identity,
    SecurityEvent,
    Session,
    TwoFactorCredential,
)


class CredentialStore(Protocol):
    """Persistence boundary consumed by the authentication services.

    Implementations must make ``record_failed_attempt``,
    ``enable_two_factor``, ``disable_two_factor`` and ``consume_backup_code``
    atomic. Unreachable backends raise ``StoreUnavailable``.
    """

    def create_identity(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        role: str = "member",
        account_status: AccountStatus = AccountStatus.ACTIVE,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def set_account_status(self, identity_id: str, status: AccountStatus) -> Identity: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...

    def set_organization_policy(
        self, organization_id: str, policy: OrganizationSecurityPolicy
    ) -> None: ...

    def get_organization_policy(
        self, organization_id: str
    ) -> Optional[OrganizationSecurityPolicy]: ...

    def record_failed_attempt(
        self,
        identity_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_until: datetime,
        attempt_id: Optional[str] = None,
    ) -> Identity: ...

    def reset_failed_attempts(self, identity_id: str) -> Identity: ...

    def upsert_two_factor(self, credential: TwoFactorCredential) -> TwoFactorCredential: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]: ...

    def enable_two_factor(self, user_id: str, *, verified_at: datetime) -> bool: ...

    def disable_two_factor(self, user_id: str) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str, *, used_at: datetime) -> bool: ...

    def touch_two_factor(self, user_id: str, *, used_at: datetime) -> None: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]: ...

    def terminate_session(
        self, session_id: str, *, terminated_at: datetime, reason: str
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, *, last_activity: datetime) -> Optional[Session]: ...

    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        category: Optional[EventCategory] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]: ...
