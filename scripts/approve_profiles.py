"""
Approve pending storefront profiles from the command line.

Signs in as an owner account (the same checks the admin endpoints apply),
lists profiles still waiting for approval and approves the requested ones.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shared.coerce import is_truthy
from storefront import accounts
from storefront.accounts import AccountError
from storefront.auth import AuthServiceError, username_to_email
from storefront.dependencies import get_auth_client, get_db_client


logger = logging.getLogger(__name__)


def pending_profiles(rows: List[dict]) -> List[dict]:
    return [row for row in rows if not is_truthy(row.get("is_approved"))]


def main() -> int:
    parser = argparse.ArgumentParser(description="Approve pending storefront profiles")
    parser.add_argument("--owner", required=True, help="Owner username to sign in with")
    parser.add_argument(
        "--approve",
        nargs="*",
        default=[],
        metavar="PROFILE_ID",
        help="Profile ids to approve",
    )
    parser.add_argument(
        "--all-pending",
        action="store_true",
        help="Approve every profile that is still pending",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report what would be approved",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    password = os.environ.get("STOREFRONT_OWNER_PASSWORD") or getpass.getpass("Owner password: ")

    auth = get_auth_client()
    db = get_db_client()
    try:
        session = auth.sign_in_with_password(username_to_email(args.owner), password)
    except AuthServiceError as exc:
        logger.error("Could not sign in as %s: %s", args.owner, exc.message)
        return 1

    try:
        _, owner_db = accounts.require_owner(auth, db, session.access_token)
        pending = pending_profiles(accounts.list_profiles(owner_db))
        targets = [row["id"] for row in pending] if args.all_pending else list(args.approve)

        if not targets:
            for row in pending:
                logger.info("Pending: %s (%s)", row.get("username"), row.get("id"))
            logger.info("%d pending profiles", len(pending))
            return 0

        for profile_id in targets:
            if args.dry_run:
                logger.info("Would approve %s", profile_id)
                continue
            accounts.approve_profile(owner_db, str(profile_id))
        logger.info("%s %d profiles", "Checked" if args.dry_run else "Approved", len(targets))
        return 0
    except AccountError as exc:
        logger.error("%s", exc.message)
        return 1
    finally:
        try:
            auth.sign_out(session.access_token)
        except AuthServiceError as exc:
            logger.warning("Sign-out failed: %s", exc.message)


if __name__ == "__main__":
    sys.exit(main())
