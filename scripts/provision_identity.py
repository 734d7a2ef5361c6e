#!/usr/bin/env python3
"""Provision identities and organization policies in the persisted store.

Usage:
    # Create an identity (password must satisfy the organization's policy):
    python scripts/provision_identity.py create --email ops@example.com --password 'S3cure!pass' --org acme

    # Load a tenant security policy blob:
    python scripts/provision_identity.py policy --org acme --file acme-policy.json

    # Clear a lockout ahead of its expiry:
    python scripts/provision_identity.py unlock --email ops@example.com --by helpdesk

    # Suspend or reactivate an account:
    python scripts/provision_identity.py status --email ops@example.com --status suspended

Environment Variables:
    SHARED_FS_ROOT: Directory holding the persisted store state
    ENCRYPTION_KEY: Key for two-factor secrets (required outside TEST_MODE)
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_identity(runtime, email: str, password: str, org: str | None, role: str) -> dict:
    existing = runtime.store.get_identity_by_email(email)
    if existing:
        print(f"Identity {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}
    policy = (org and runtime.store.get_organization_policy(org)) or runtime.gateway.default_policy
    problems = policy.password_policy.violations(password)
    if problems:
        print("Error: password does not meet policy")
        for problem in problems:
            print(f"  - {problem}")
        return {"user_id": None, "email": email, "status": "password_rejected"}
    identity = runtime.store.create_identity(email, organization_id=org, role=role)
    runtime.gateway.set_password(identity.id, password)
    print(f"Created identity: {email} (id: {identity.id})")
    return {"user_id": identity.id, "email": email, "status": "created"}


def load_policy(runtime, org: str, path: Path) -> dict:
    from authgate.policy import OrganizationSecurityPolicy

    blob = json.loads(path.read_text())
    policy = OrganizationSecurityPolicy.from_blob(blob)
    runtime.store.set_organization_policy(org, policy)
    print(f"Stored policy for organization {org}")
    return {"organization_id": org, "status": "stored", "policy": policy.model_dump()}


def unlock_identity(runtime, email: str, unlocked_by: str) -> dict:
    identity = runtime.store.get_identity_by_email(email)
    if identity is None:
        print(f"Error: no identity for {email}")
        return {"email": email, "status": "not_found"}
    runtime.gateway.lockout.unlock(identity.id, unlocked_by=unlocked_by)
    print(f"Unlocked {email}")
    return {"user_id": identity.id, "email": email, "status": "unlocked"}


def set_status(runtime, email: str, status: str) -> dict:
    from authgate.storage.models import AccountStatus

    identity = runtime.store.get_identity_by_email(email)
    if identity is None:
        print(f"Error: no identity for {email}")
        return {"email": email, "status": "not_found"}
    updated = runtime.store.set_account_status(identity.id, AccountStatus(status))
    print(f"Account {email} is now {updated.account_status.value}")
    return {"user_id": identity.id, "email": email, "status": updated.account_status.value}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Provision AuthGate identities and policies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="create an identity with a password")
    create.add_argument("--email", default=os.environ.get("IDENTITY_EMAIL"))
    create.add_argument("--password", default=os.environ.get("IDENTITY_PASSWORD"))
    create.add_argument("--org", default=None, help="organization id")
    create.add_argument("--role", default="member")

    policy = sub.add_parser("policy", help="store an organization security policy")
    policy.add_argument("--org", required=True)
    policy.add_argument("--file", required=True, type=Path)

    unlock = sub.add_parser("unlock", help="clear an account lockout")
    unlock.add_argument("--email", required=True)
    unlock.add_argument("--by", default="cli")

    status = sub.add_parser("status", help="change an account's status")
    status.add_argument("--email", required=True)
    status.add_argument(
        "--status",
        required=True,
        choices=["active", "inactive", "suspended", "pending_verification"],
    )

    args = parser.parse_args(argv)

    if args.command == "create" and (not args.email or not args.password):
        print("Error: --email and --password (or IDENTITY_EMAIL / IDENTITY_PASSWORD) required")
        return 1

    os.environ.setdefault("PERSIST_MEMORY_STORE", "true")

    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    if args.command == "create":
        result = create_identity(runtime, args.email, args.password, args.org, args.role)
        return 0 if result["status"] in ("created", "exists") else 1
    if args.command == "policy":
        load_policy(runtime, args.org, args.file)
        return 0
    if args.command == "status":
        result = set_status(runtime, args.email, args.status)
        return 1 if result["status"] == "not_found" else 0
    result = unlock_identity(runtime, args.email, args.by)
    return 0 if result["status"] == "unlocked" else 1


if __name__ == "__main__":
    sys.exit(main())
