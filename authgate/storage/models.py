from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    LOCKED = "locked"
    PENDING_VERIFICATION = "pending_verification"


class EventCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    DATA_ACCESS = "data_access"
    ADMIN_ACTION = "admin_action"


@dataclass
class Identity:
    id: str
    email: str
    organization_id: Optional[str] = None
    account_status: AccountStatus = AccountStatus.ACTIVE
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        email: str,
        *,
        organization_id: Optional[str] = None,
        role: str = "member",
        account_status: AccountStatus = AccountStatus.ACTIVE,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            organization_id=organization_id,
            role=role,
            account_status=account_status,
        )


@dataclass
class TwoFactorCredential:
    user_id: str
    secret: str
    backup_codes: List[str] = field(default_factory=list)
    backup_code_hashes: List[str] = field(default_factory=list)
    backup_codes_used: List[str] = field(default_factory=list)
    method_type: str = "totp"
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @property
    def backup_codes_remaining(self) -> int:
        used = set(self.backup_codes_used)
        return sum(1 for h in self.backup_code_hashes if h not in used)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    session_token_hash: Optional[str] = None
    refresh_token_hash: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    termination_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
        session_token_hash: Optional[str] = None,
        refresh_token_hash: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=created,
            expires_at=expires_at,
            last_activity=created,
            session_token_hash=session_token_hash,
            refresh_token_hash=refresh_token_hash,
            device_fingerprint=device_fingerprint,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    event_type: str
    event_category: EventCategory
    description: str
    success: bool
    created_at: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    details: Dict = field(default_factory=dict)
    risk_score: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
