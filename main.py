#!/usr/bin/env python3
"""
ProdReport -- Operator command line for the security service.

Usage:
  python main.py check-password 'Tr1cky!pass'
  python main.py check-password 'Tr1cky!pass' --min-length 12
  python main.py audit-log
  python main.py audit-log --user user-42 --limit 20
  python main.py audit-log --json

Environment variables:
  AUDIT_DB_URL        SQLAlchemy URL of the audit database (default: audit/prodreport_audit.db)
  PASSWORD_MIN_LENGTH Default minimum length for check-password
"""

import argparse
import json
import sys
from dataclasses import asdict
from typing import Optional

from audit.store import AuditStore
from core.config import get_settings
from security.passwords import validate_password


def check_password(password: str, min_length: int) -> int:
    """Print the strength report for one password. Returns the process exit code."""
    result = validate_password(password, min_length)
    if result.is_valid:
        print("  Password meets the strength policy.")
        return 0
    print("  Password is too weak:")
    for error in result.errors:
        print(f"    - {error}")
    return 1


def show_audit_log(db_url: Optional[str], user_id: Optional[str], limit: int, as_json: bool) -> int:
    """Print recent audit rows, newest first."""
    store = AuditStore(db_url)
    try:
        entries = store.get_audit_logs(user_id=user_id, limit=limit)
    finally:
        store.close()

    if as_json:
        print(json.dumps([asdict(e) for e in entries], indent=2))
        return 0

    if not entries:
        print("  No audit entries found.")
        return 0

    for entry in entries:
        event_type = entry.details.get("type", "-")
        ip = entry.details.get("ip_address", "-")
        print(f"  {entry.created_at}  {entry.action:<16} {entry.actor_id:<20} {event_type:<20} {ip}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="prodreport",
        description="Operator tools for the ProdReport security service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py check-password 'Tr1cky!pass'
  python main.py audit-log --user user-42
  python main.py audit-log --json > audit.json
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    pw = sub.add_parser("check-password", help="Report every strength rule a password breaks")
    pw.add_argument("password", help="Candidate password (quote it to protect special characters)")
    pw.add_argument(
        "--min-length",
        type=int,
        default=settings.password_min_length,
        metavar="N",
        help=f"Minimum length (default: {settings.password_min_length})",
    )

    audit = sub.add_parser("audit-log", help="Print recent audit trail entries")
    audit.add_argument("--user", metavar="USER_ID", help="Only show entries for this actor")
    audit.add_argument("--limit", type=int, default=50, metavar="N", help="Maximum rows to print (default: 50)")
    audit.add_argument("--json", action="store_true", help="Output structured JSON")
    audit.add_argument("--db-url", metavar="URL", help="Audit database URL (default: AUDIT_DB_URL)")

    args = parser.parse_args(argv)

    if args.command == "check-password":
        return check_password(args.password, args.min_length)
    if args.command == "audit-log":
        if args.limit < 1:
            parser.error("--limit must be at least 1")
        return show_audit_log(args.db_url, args.user, args.limit, args.json)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
