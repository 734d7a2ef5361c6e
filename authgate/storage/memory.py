from __future__ import annotations

import copy
import json
import threading
from collections import deque
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

from authgate.logging import get_logger
from authgate.policy import OrganizationSecurityPolicy
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import (
    AccountStatus,
    EventCategory,
    Identity,
    SecurityEvent,
    Session,
    TwoFactorCredential,
)

# Retried attempt ids remembered per identity for idempotent failure counting
_SEEN_ATTEMPTS_PER_IDENTITY = 64


class MemoryStore:
    """In-process credential store.

    Every read and write runs under one re-entrant lock, so counter
    increments and the two-record 2FA enable/disable are linearizable.
    Records handed out are copies; callers mutate state only through the
    store's methods.
    """

    def __init__(self, fs_root: str | None = None, *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.two_factor: Dict[str, TwoFactorCredential] = {}
        self.sessions: Dict[str, Session] = {}
        self.security_events: List[SecurityEvent] = []
        self.policies: Dict[str, OrganizationSecurityPolicy] = {}
        self._seen_attempts: Dict[str, Deque[str]] = {}
        self._data_lock = threading.RLock()
        self.persist = persist and fs_root is not None
        self.fs_root = Path(fs_root) if fs_root else None
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _clone(record):
        return copy.deepcopy(record) if record is not None else None

    # -- identities -------------------------------------------------------

    def create_identity(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        role: str = "member",
        account_status: AccountStatus = AccountStatus.ACTIVE,
    ) -> Identity:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(i.email == normalized for i in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity.new(
                normalized,
                organization_id=organization_id,
                role=role,
                account_status=account_status,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return self._clone(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self._clone(self.identities.get(identity_id))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            for identity in self.identities.values():
                if identity.email == normalized:
                    return self._clone(identity)
            return None

    def set_account_status(self, identity_id: str, status: AccountStatus) -> Identity:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            identity.account_status = status
            self._persist_state()
            return self._clone(identity)

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.identities.get(identity_id)
        if identity is None:
            raise ConstraintViolation("identity not found", {"user_id": identity_id})
        return identity

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self._require_identity(user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- organization policy ---------------------------------------------

    def set_organization_policy(
        self, organization_id: str, policy: OrganizationSecurityPolicy
    ) -> None:
        with self._data_lock:
            self.policies[organization_id] = policy
            self._persist_state()

    def get_organization_policy(
        self, organization_id: str
    ) -> Optional[OrganizationSecurityPolicy]:
        with self._data_lock:
            return self.policies.get(organization_id)

    # -- lockout counters -------------------------------------------------

    def record_failed_attempt(
        self,
        identity_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_until: datetime,
        attempt_id: Optional[str] = None,
    ) -> Identity:
        """Increment the failure counter and lock once it reaches ``max_attempts``.

        A lock that has already elapsed is cleared first so the new failure
        starts a fresh count. A repeated ``attempt_id`` is a no-op.
        """
        with self._data_lock:
            identity = self._require_identity(identity_id)
            seen = self._seen_attempts.setdefault(
                identity_id, deque(maxlen=_SEEN_ATTEMPTS_PER_IDENTITY)
            )
            if attempt_id is not None and attempt_id in seen:
                return self._clone(identity)
            if identity.locked_until is not None and identity.locked_until <= now:
                identity.failed_login_attempts = 0
                identity.locked_until = None
                if identity.account_status == AccountStatus.LOCKED:
                    identity.account_status = AccountStatus.ACTIVE
            identity.failed_login_attempts += 1
            if identity.failed_login_attempts >= max_attempts:
                identity.locked_until = lockout_until
                identity.account_status = AccountStatus.LOCKED
            if attempt_id is not None:
                seen.append(attempt_id)
            self._persist_state()
            return self._clone(identity)

    def reset_failed_attempts(self, identity_id: str) -> Identity:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            identity.failed_login_attempts = 0
            identity.locked_until = None
            if identity.account_status == AccountStatus.LOCKED:
                identity.account_status = AccountStatus.ACTIVE
            self._seen_attempts.pop(identity_id, None)
            self._persist_state()
            return self._clone(identity)

    # -- two-factor credentials ------------------------------------------

    def upsert_two_factor(self, credential: TwoFactorCredential) -> TwoFactorCredential:
        with self._data_lock:
            self._require_identity(credential.user_id)
            stored = self._clone(credential)
            self.two_factor[credential.user_id] = stored
            self._persist_state()
            return self._clone(stored)

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            return self._clone(self.two_factor.get(user_id))

    def enable_two_factor(self, user_id: str, *, verified_at: datetime) -> bool:
        """Mark a pending credential verified and raise the identity flag together."""
        with self._data_lock:
            credential = self.two_factor.get(user_id)
            identity = self.identities.get(user_id)
            if credential is None or identity is None or credential.is_verified:
                return False
            credential.is_verified = True
            credential.verified_at = verified_at
            identity.two_factor_enabled = True
            self._persist_state()
            return True

    def disable_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            identity = self._require_identity(user_id)
            removed = self.two_factor.pop(user_id, None)
            was_enabled = identity.two_factor_enabled
            identity.two_factor_enabled = False
            self._persist_state()
            return removed is not None or was_enabled

    def consume_backup_code(self, user_id: str, code_hash: str, *, used_at: datetime) -> bool:
        """Compare-and-add: succeeds only for a known hash not yet consumed."""
        with self._data_lock:
            credential = self.two_factor.get(user_id)
            if credential is None or not credential.is_verified:
                return False
            if code_hash not in credential.backup_code_hashes:
                return False
            if code_hash in credential.backup_codes_used:
                return False
            credential.backup_codes_used.append(code_hash)
            credential.last_used_at = used_at
            self._persist_state()
            return True

    def touch_two_factor(self, user_id: str, *, used_at: datetime) -> None:
        with self._data_lock:
            credential = self.two_factor.get(user_id)
            if credential is None:
                return
            credential.last_used_at = used_at
            self._persist_state()

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self._require_identity(session.user_id)
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = self._clone(session)
            self._persist_state()
            return self._clone(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self._clone(self.sessions.get(session_id))

    def list_sessions(self, user_id: str, *, active_at: Optional[datetime] = None) -> List[Session]:
        """Sessions of ``user_id`` in creation order, optionally only those active at ``active_at``."""
        with self._data_lock:
            found = [s for s in self.sessions.values() if s.user_id == user_id]
            if active_at is not None:
                found = [s for s in found if s.is_active(active_at)]
            return [self._clone(s) for s in found]

    def terminate_session(
        self, session_id: str, *, terminated_at: datetime, reason: str
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            if session.expires_at > terminated_at:
                session.expires_at = terminated_at
            if session.termination_reason is None:
                session.termination_reason = reason
            self._persist_state()
            return self._clone(session)

    def touch_session(self, session_id: str, *, last_activity: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            session.last_activity = last_activity
            self._persist_state()
            return self._clone(session)

    # -- security events --------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(event)
            self._persist_state()
            return event

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        category: Optional[EventCategory] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        """Return matching events, newest first."""
        with self._data_lock:
            matches = []
            for event in reversed(self.security_events):
                if user_id is not None and event.user_id != user_id:
                    continue
                if event_type is not None and event.event_type != event_type:
                    continue
                if category is not None and event.event_category != category:
                    continue
                if since is not None and event.created_at < since:
                    continue
                matches.append(event)
                if limit is not None and len(matches) >= limit:
                    break
            return matches

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _to_json(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: MemoryStore._to_json(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [MemoryStore._to_json(v) for v in value]
        return value

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "identities": [self._to_json(asdict(i)) for i in self.identities.values()],
            "credentials": [
                {"user_id": uid, "password_hash": rec[0], "password_algo": rec[1]}
                for uid, rec in self.credentials.items()
            ],
            "two_factor": [self._to_json(asdict(c)) for c in self.two_factor.values()],
            "sessions": [self._to_json(asdict(s)) for s in self.sessions.values()],
            "security_events": [self._to_json(asdict(e)) for e in self.security_events],
            "policies": {
                org_id: policy.model_dump() for org_id, policy in self.policies.items()
            },
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("store_persist_failed", error=str(exc), path=str(path))
            raise StoreUnavailable(
                f"failed to persist credential store: {exc}", operation="persist"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {}
        for raw in data.get("identities", []):
            identity = Identity(
                id=raw["id"],
                email=raw["email"],
                organization_id=raw.get("organization_id"),
                account_status=AccountStatus(raw.get("account_status", "active")),
                failed_login_attempts=raw.get("failed_login_attempts", 0),
                locked_until=self._parse_dt(raw.get("locked_until")),
                two_factor_enabled=raw.get("two_factor_enabled", False),
                role=raw.get("role", "member"),
                created_at=self._parse_dt(raw["created_at"]),
                meta=raw.get("meta"),
            )
            self.identities[identity.id] = identity
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.two_factor = {}
        for raw in data.get("two_factor", []):
            self.two_factor[raw["user_id"]] = TwoFactorCredential(
                user_id=raw["user_id"],
                secret=raw["secret"],
                backup_codes=list(raw.get("backup_codes", [])),
                backup_code_hashes=list(raw.get("backup_code_hashes", [])),
                backup_codes_used=list(raw.get("backup_codes_used", [])),
                method_type=raw.get("method_type", "totp"),
                is_verified=raw.get("is_verified", False),
                created_at=self._parse_dt(raw["created_at"]),
                verified_at=self._parse_dt(raw.get("verified_at")),
                last_used_at=self._parse_dt(raw.get("last_used_at")),
            )
        self.sessions = {}
        for raw in data.get("sessions", []):
            session = Session(
                id=raw["id"],
                user_id=raw["user_id"],
                created_at=self._parse_dt(raw["created_at"]),
                expires_at=self._parse_dt(raw["expires_at"]),
                last_activity=self._parse_dt(raw["last_activity"]),
                session_token_hash=raw.get("session_token_hash"),
                refresh_token_hash=raw.get("refresh_token_hash"),
                device_fingerprint=raw.get("device_fingerprint"),
                user_agent=raw.get("user_agent"),
                ip_address=raw.get("ip_address"),
                termination_reason=raw.get("termination_reason"),
            )
            self.sessions[session.id] = session
        self.security_events = [
            SecurityEvent(
                id=raw["id"],
                event_type=raw["event_type"],
                event_category=EventCategory(raw["event_category"]),
                description=raw.get("description", ""),
                success=raw["success"],
                created_at=self._parse_dt(raw["created_at"]),
                user_id=raw.get("user_id"),
                session_id=raw.get("session_id"),
                details=raw.get("details") or {},
                risk_score=raw.get("risk_score", 0),
                ip_address=raw.get("ip_address"),
                user_agent=raw.get("user_agent"),
                failure_reason=raw.get("failure_reason"),
            )
            for raw in data.get("security_events", [])
        ]
        self.policies = {
            org_id: OrganizationSecurityPolicy.model_validate(blob)
            for org_id, blob in (data.get("policies") or {}).items()
        }
        return True
