from __future__ import annotations

import string
from typing import TYPE_CHECKING, Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from authgate.logging import get_logger

if TYPE_CHECKING:
    from authgate.config import Settings
    from authgate.service.store import CredentialStore
    from authgate.storage.models import Identity

logger = get_logger(__name__)

_SPECIAL_CHARS = set(string.punctuation)


class PasswordPolicy(BaseModel):
    """Password composition rules for an organization."""

    min_length: int = Field(8, ge=1)
    max_length: int = Field(128, ge=1)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True

    model_config = ConfigDict(extra="ignore", frozen=True)

    def violations(self, password: str) -> List[str]:
        """Return human-readable rule violations; an empty list means acceptable."""
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"Password must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            problems.append(f"Password must be less than {self.max_length} characters")
        if self.require_uppercase and not any(c.isupper() for c in password):
            problems.append("Password must contain an uppercase letter")
        if self.require_lowercase and not any(c.islower() for c in password):
            problems.append("Password must contain a lowercase letter")
        if self.require_numbers and not any(c.isdigit() for c in password):
            problems.append("Password must contain a number")
        if self.require_special_chars and not any(c in _SPECIAL_CHARS for c in password):
            problems.append("Password must contain a special character")
        return problems


class OrganizationSecurityPolicy(BaseModel):
    """Per-tenant security configuration, read-only to the core.

    Every duration carries its unit in the field name. Defaults are the
    documented fallbacks used when an organization has no stored policy.
    """

    max_failed_attempts: int = Field(5, ge=1)
    lockout_duration_minutes: int = Field(30, ge=1)
    max_concurrent_sessions: int = Field(3, ge=1)
    idle_timeout_minutes: int = Field(30, ge=1)
    absolute_timeout_hours: int = Field(8, ge=1)
    require_2fa: bool = False
    require_2fa_for_admins: bool = False
    require_email_verification: bool = False
    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_blob(cls, blob: Optional[Mapping[str, Any]]) -> "OrganizationSecurityPolicy":
        """Parse a JSON-shaped tenant policy blob.

        Accepts both the flat field layout and the nested one with
        ``account_policy`` / ``session_policy`` / ``password_policy`` sections.
        Unknown keys are ignored; missing keys take the defaults.
        """
        if not blob:
            return cls()
        flat: dict[str, Any] = {}
        for section in ("account_policy", "session_policy"):
            nested = blob.get(section)
            if isinstance(nested, Mapping):
                flat.update(nested)
        for key, value in blob.items():
            if key not in ("account_policy", "session_policy", "network_policy"):
                flat[key] = value
        pwd = flat.get("password_policy")
        if isinstance(pwd, Mapping) and "require_symbols" in pwd:
            pwd = dict(pwd)
            pwd.setdefault("require_special_chars", pwd.pop("require_symbols"))
            flat["password_policy"] = pwd
        return cls.model_validate(flat)

    def requires_two_factor(self, role: Optional[str] = None) -> bool:
        if self.require_2fa:
            return True
        return bool(self.require_2fa_for_admins and role == "admin")


DEFAULT_POLICY = OrganizationSecurityPolicy()


def default_policy_from_settings(settings: "Settings") -> OrganizationSecurityPolicy:
    """Build the fallback policy, honoring operator overrides of the defaults."""
    return OrganizationSecurityPolicy(
        max_failed_attempts=settings.default_max_failed_attempts,
        lockout_duration_minutes=settings.default_lockout_duration_minutes,
        max_concurrent_sessions=settings.default_max_concurrent_sessions,
        idle_timeout_minutes=settings.default_idle_timeout_minutes,
    )


def resolve_policy(
    store: "CredentialStore",
    identity: Optional["Identity"],
    default: OrganizationSecurityPolicy = DEFAULT_POLICY,
) -> OrganizationSecurityPolicy:
    """Resolve the policy governing ``identity``, falling back to ``default``."""
    if identity is None or not identity.organization_id:
        return default
    policy = store.get_organization_policy(identity.organization_id)
    if policy is None:
        logger.debug(
            "organization_policy_missing",
            organization_id=identity.organization_id,
        )
        return default
    return policy
