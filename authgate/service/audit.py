from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from authgate.logging import get_logger
from authgate.service.store import CredentialStore
from authgate.storage.models import EventCategory, SecurityEvent

logger = get_logger(__name__)

# Risk magnitudes per event type; positive is suspicious, negative improves posture
RISK_LOGIN_BLOCKED = 40
RISK_LOGIN_FAILED = 30
RISK_PENDING_2FA = 10
RISK_2FA_FAILED = 50
RISK_2FA_DISABLED = 20
RISK_2FA_DISABLE_FAILED = 30
RISK_2FA_ENABLED = -10
RISK_ACCOUNT_UNLOCKED = -5
RISK_NONE = 0


@dataclass
class SecurityEventInput:
    event_type: str
    description: str
    success: bool
    risk_score: int = RISK_NONE
    category: EventCategory = EventCategory.AUTHENTICATION
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RiskSummary:
    user_id: Optional[str]
    total_risk: int
    event_count: int
    failures: int
    by_severity: Dict[str, int]


def severity_for(score: int) -> str:
    if score >= 50:
        return "high"
    if score >= 30:
        return "medium"
    if score > 0:
        return "low"
    return "info"


class RiskAuditLog:
    """Append-only security event log.

    Writes are best effort: a failing sink is logged and never surfaces to
    the authentication flow that produced the event.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        user_id: Optional[str],
        session_id: Optional[str],
        event: SecurityEventInput,
    ) -> Optional[SecurityEvent]:
        entry = SecurityEvent(
            id=str(uuid.uuid4()),
            event_type=event.event_type,
            event_category=event.category,
            description=event.description,
            success=event.success,
            created_at=self._clock(),
            user_id=user_id,
            session_id=session_id,
            details=dict(event.details),
            risk_score=event.risk_score,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            failure_reason=event.failure_reason,
        )
        try:
            stored = self.store.append_security_event(entry)
        except Exception as exc:
            logger.error(
                "security_event_write_failed",
                event_type=event.event_type,
                user_id=user_id,
                error=str(exc),
            )
            return None
        log = logger.info if event.success else logger.warning
        log(
            "security_event",
            event_type=event.event_type,
            user_id=user_id,
            session_id=session_id,
            risk_score=event.risk_score,
            severity=severity_for(event.risk_score),
        )
        return stored

    def list_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        category: Optional[EventCategory] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]:
        return self.store.list_security_events(
            user_id=user_id,
            event_type=event_type,
            category=category,
            since=since,
            limit=limit,
        )

    def risk_summary(
        self, user_id: Optional[str] = None, *, since: Optional[datetime] = None
    ) -> RiskSummary:
        events = self.store.list_security_events(user_id=user_id, since=since)
        severities = Counter(severity_for(e.risk_score) for e in events)
        return RiskSummary(
            user_id=user_id,
            total_risk=sum(e.risk_score for e in events),
            event_count=len(events),
            failures=sum(1 for e in events if not e.success),
            by_severity={
                level: severities.get(level, 0)
                for level in ("high", "medium", "low", "info")
            },
        )
