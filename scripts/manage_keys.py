#!/usr/bin/env python3
"""Operator commands for signing keys and locked accounts.

Usage:
    # Force a signing key rotation (older keys stay valid until they expire):
    python scripts/manage_keys.py rotate

    # Run the scheduled check once (rotate if due, prune expired keys):
    python scripts/manage_keys.py check

    # Print the published JWKS document:
    python scripts/manage_keys.py jwks

    # Clear the failed-login counter and lockout for a user:
    python scripts/manage_keys.py unlock --user alice

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    KEY_ENCRYPTION_KEY: secret sealing private keys at rest (required with Postgres)
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


def _runtime():
    # Import here to avoid loading config before env vars are set
    from tokenforge.service.runtime import get_runtime

    return get_runtime()


def cmd_rotate(args: argparse.Namespace) -> int:
    runtime = _runtime()
    if args.dry_run:
        current = runtime.keys.current_key()
        print(f"[DRY RUN] Would rotate; current key {current.kid} expires {current.expires_at.isoformat()}")
        return 0
    key = runtime.keys.rotate()
    print(f"Rotated signing key: {key.kid} (expires {key.expires_at.isoformat()})")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    runtime = _runtime()
    rotated = runtime.keys.check_rotation()
    current = runtime.keys.current_key()
    print(f"{'Rotated' if rotated else 'No rotation due'}; current key {current.kid}")
    return 0


def cmd_jwks(args: argparse.Namespace) -> int:
    runtime = _runtime()
    print(json.dumps(runtime.keys.public_key_set(), indent=2))
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    runtime = _runtime()
    user = runtime.store.get_user_by_username(args.user) or runtime.store.get_user_by_email(
        args.user
    )
    if user is None:
        print(f"Error: no user matches {args.user!r}")
        return 1
    if args.dry_run:
        print(
            f"[DRY RUN] Would unlock {user.username} "
            f"(failed attempts: {user.failed_login_attempts}, locked until: {user.locked_until})"
        )
        return 0
    runtime.auth.unlock_account(user.id)
    print(f"Unlocked {user.username} (id: {user.id})")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Manage TokenForge signing keys and account lockouts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("rotate", help="Generate and publish a new signing key").set_defaults(
        func=cmd_rotate
    )
    sub.add_parser("check", help="Run the scheduled rotation check once").set_defaults(
        func=cmd_check
    )
    sub.add_parser("jwks", help="Print the public key set").set_defaults(func=cmd_jwks)
    unlock = sub.add_parser("unlock", help="Clear lockout state for a user")
    unlock.add_argument("--user", required=True, help="Username or email")
    unlock.set_defaults(func=cmd_unlock)

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tokenforge")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        sys.exit(args.func(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
