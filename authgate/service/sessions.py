from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional

from authgate.logging import get_logger
from authgate.policy import DEFAULT_POLICY, OrganizationSecurityPolicy, resolve_policy
from authgate.service.audit import RISK_NONE, RiskAuditLog, SecurityEventInput
from authgate.service.crypto import sha256_hex
from authgate.service.errors import NotFoundError
from authgate.service.store import CredentialStore
from authgate.service.tokens import AuthTokens
from authgate.storage.models import Session

logger = get_logger(__name__)

REASON_MANUAL_LOGOUT = "manual_logout"
REASON_CONCURRENT_LIMIT = "concurrent_session_limit"
REASON_IDLE_TIMEOUT = "idle_timeout"
REASON_ABSOLUTE_TIMEOUT = "absolute_timeout"


@dataclass(frozen=True)
class DeviceInfo:
    """Client signals used to group sessions by device; never an identity proof."""

    user_agent: Optional[str] = None
    screen: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> Optional["DeviceInfo"]:
        if not raw:
            return None
        return cls(
            user_agent=raw.get("user_agent") or raw.get("userAgent"),
            screen=raw.get("screen"),
            timezone=raw.get("timezone"),
            language=raw.get("language"),
        )


def device_fingerprint(device: Optional[DeviceInfo]) -> str:
    if device is None:
        return str(uuid.uuid4())
    signals = {
        "userAgent": device.user_agent,
        "screen": device.screen,
        "timezone": device.timezone,
        "language": device.language,
    }
    return sha256_hex(json.dumps(signals, sort_keys=True, separators=(",", ":")))


class SessionManager:
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

    def _policy_for(self, user_id: str) -> OrganizationSecurityPolicy:
        return resolve_policy(self.store, self.store.get_identity(user_id), self.default_policy)

    def create_session(
        self,
        user_id: str,
        tokens: AuthTokens,
        device_info: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """Persist a session for freshly issued tokens and return its id.

        Only hashes of the tokens are stored; the session expires with the
        access token.
        """
        session = Session(
            id=tokens.session_id,
            user_id=user_id,
            created_at=self._clock(),
            expires_at=tokens.expires_at,
            last_activity=self._clock(),
            session_token_hash=sha256_hex(tokens.access_token),
            refresh_token_hash=sha256_hex(tokens.refresh_token),
            device_fingerprint=device_fingerprint(device_info),
            user_agent=device_info.user_agent if device_info else None,
            ip_address=ip_address,
        )
        self.store.create_session(session)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session.id

    def validate_concurrency(self, user_id: str, *, keep_session_id: Optional[str] = None) -> int:
        """Evict the least recently active sessions above the policy ceiling.

        ``keep_session_id`` is never evicted. Returns the number of sessions
        terminated.
        """
        limit = self._policy_for(user_id).max_concurrent_sessions
        active = self.store.list_sessions(user_id, active_at=self._clock())
        excess = len(active) - limit
        if excess <= 0:
            return 0
        candidates = sorted(
            (s for s in active if s.id != keep_session_id),
            key=lambda s: s.last_activity,
        )
        evicted = 0
        for session in candidates[:excess]:
            if self.terminate(session.id, REASON_CONCURRENT_LIMIT):
                evicted += 1
        logger.info(
            "session_evicted",
            user_id=user_id,
            evicted=evicted,
            max_concurrent_sessions=limit,
        )
        return evicted

    def terminate(self, session_id: str, reason: str = REASON_MANUAL_LOGOUT) -> bool:
        session = self.store.terminate_session(
            session_id, terminated_at=self._clock(), reason=reason
        )
        if session is None:
            logger.warning("session_terminate_unknown", session_id=session_id)
            return False
        self.audit.record(
            session.user_id,
            session.id,
            SecurityEventInput(
                event_type="session_terminated",
                description="User session terminated",
                success=True,
                risk_score=RISK_NONE,
                details={"reason": reason},
            ),
        )
        return True

    def validate_session_security(self, user_id: str, session_id: str) -> bool:
        """Check a session is live for ``user_id`` and record activity on it.

        Sessions idle past ``idle_timeout_minutes`` or older than
        ``absolute_timeout_hours`` are terminated and rejected.
        """
        session = self.store.get_session(session_id)
        now = self._clock()
        if session is None or session.user_id != user_id or not session.is_active(now):
            return False
        policy = self._policy_for(user_id)
        if now - session.last_activity > timedelta(minutes=policy.idle_timeout_minutes):
            self.terminate(session_id, REASON_IDLE_TIMEOUT)
            return False
        if now - session.created_at > timedelta(hours=policy.absolute_timeout_hours):
            self.terminate(session_id, REASON_ABSOLUTE_TIMEOUT)
            return False
        self.store.touch_session(session_id, last_activity=now)
        self.validate_concurrency(user_id, keep_session_id=session_id)
        return True

    def list_active_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id, active_at=self._clock())

    def get_owned_session(self, user_id: str, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        return session
