"""
Grandfathering ops utility.

Same operations as the /v1/admin/grandfathering routes, for use from a shell
inside the api container (e.g. right after the paywall goes live).

Examples:
  python scripts/grandfathering_admin.py stats
  python scripts/grandfathering_admin.py report
  python scripts/grandfathering_admin.py bulk-grant --commit
  python scripts/grandfathering_admin.py grant --user-id <id> --expires-at 2025-09-01T00:00:00+00:00 --commit
  python scripts/grandfathering_admin.py cleanup --commit

Mutating commands default to DRY_RUN (prints what they would touch). Use --commit to apply.
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime


_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

READ_ONLY = ("stats", "report")
MUTATING = ("bulk-grant", "cleanup", "warnings", "maintenance", "grant", "revoke")


def _print(result) -> None:
    print(json.dumps(result, indent=2, default=str))


def _preview(manager, command: str, user_id: str | None):
    if command == "bulk-grant":
        stats = manager.stats()
        return {"free_users": stats["free_users"], "users_before_paywall": stats["users_before_paywall"]}
    if command in ("cleanup", "maintenance"):
        report = manager.expiration_report()
        return {"fully_expired": report["fully_expired"], "grace_period": report["grace_period"]}
    if command == "warnings":
        return {"approaching_expiration": manager.approaching_expiration()}
    user = manager.store.get_user(user_id)
    if user is None:
        return {"error": f"User not found: {user_id}"}
    return {
        "user_id": user.id,
        "tier": user.subscription_tier.value,
        "grandfathered_until": user.grandfathered_until,
    }


def main() -> int:
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("command", choices=READ_ONLY + MUTATING)
    parser.add_argument("--user-id", type=str, default=None, help="Target user (grant/revoke)")
    parser.add_argument("--expires-at", type=str, default=None, help="ISO timestamp for grant (default: now + duration)")
    parser.add_argument("--commit", action="store_true", help="Persist changes (default: dry-run)")
    args = parser.parse_args()

    if args.command in ("grant", "revoke") and not args.user_id:
        print("ERROR: --user-id is required for grant/revoke")
        return 2

    expires_at = None
    if args.expires_at:
        try:
            expires_at = datetime.fromisoformat(args.expires_at)
        except ValueError:
            print(f"ERROR: invalid --expires-at: {args.expires_at}")
            return 2
        if expires_at.tzinfo is None:
            print("ERROR: --expires-at must include a UTC offset")
            return 2

    from core.config import settings
    from core.logging import setup_logging
    from services.entitlements import NotFound
    from services.entitlements.factory import services_from_settings

    setup_logging()
    manager = services_from_settings(settings).grandfathering

    if args.command == "stats":
        _print(manager.stats())
        return 0
    if args.command == "report":
        _print(manager.expiration_report())
        return 0

    if not args.commit:
        print("MODE DRY_RUN")
        _print(_preview(manager, args.command, args.user_id))
        return 0

    print("MODE COMMIT")
    try:
        if args.command == "bulk-grant":
            result = manager.bulk_grant_eligible()
        elif args.command == "cleanup":
            result = manager.cleanup_expired()
        elif args.command == "warnings":
            result = manager.send_expiration_warnings()
        elif args.command == "maintenance":
            result = manager.run_expiration_maintenance()
        elif args.command == "grant":
            user = manager.grant(args.user_id, expires_at)
            result = {"user_id": user.id, "tier": user.subscription_tier.value, "grandfathered_until": user.grandfathered_until}
        else:
            user = manager.revoke(args.user_id)
            result = {"user_id": user.id, "tier": user.subscription_tier.value, "grandfathered_until": user.grandfathered_until}
    except NotFound as e:
        print(f"ERROR: {e}")
        return 2

    _print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
