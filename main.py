#!/usr/bin/env python3
"""
Intranet auth admin tool -- manage who may sign in without going through the API.

Usage:
  python main.py invite
  python main.py invite --max-uses 5 --expiry-days 7 --notes "Onboarding batch"
  python main.py authorize --email ana@corp.com
  python main.py authorize --phone "+55 11 99999-0000"
  python main.py domain corp.com
  python main.py requests
  python main.py requests --status rejected
  python main.py approve 12
  python main.py reject 13 --reason "Not an employee"

Environment variables are the same as for the API (see core/config.py):
DATABASE_URL selects the database, SECRET_KEY is required unless DEBUG=true.
"""

import argparse
import sys
from typing import Optional

from auth.access_store import AccessStore
from auth.authorization import AuthorizationGate, OperationResult
from auth.models import EntryStatus
from auth.notify import NotificationDispatcher
from auth.store import UserStore
from core.config import get_settings

_CLI_ACTOR = "cli"


def _print_result(result: OperationResult) -> int:
    suffix = f" (entry {result.entry_id})" if result.entry_id is not None else ""
    marker = "" if result.success else "[!] "
    print(f"  {marker}{result.message}{suffix}")
    return 0 if result.success else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intranet-auth",
        description="Administer the intranet sign-in allow-list.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--by",
        default=_CLI_ACTOR,
        metavar="NAME",
        help="Name recorded as the author of changes (default: cli)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    invite = sub.add_parser("invite", help="Generate an invite code")
    invite.add_argument("--expiry-days", type=int, default=None, metavar="N", help="Days until the code expires")
    invite.add_argument("--max-uses", type=int, default=None, metavar="N", help="How many sign-ups the code allows")
    invite.add_argument("--notes", default=None)

    authorize = sub.add_parser("authorize", help="Allow an email address and/or phone number")
    authorize.add_argument("--email", default=None)
    authorize.add_argument("--phone", default=None)
    authorize.add_argument("--notes", default=None)

    domain = sub.add_parser("domain", help="Allow every address in an email domain")
    domain.add_argument("domain", help='Exact domain, e.g. "corp.com"')
    domain.add_argument("--notes", default=None)

    requests_cmd = sub.add_parser("requests", help="List authorization entries")
    requests_cmd.add_argument(
        "--status",
        choices=[s.value for s in EntryStatus],
        default=EntryStatus.PENDING.value,
        help="Entry status to list (default: pending)",
    )

    approve = sub.add_parser("approve", help="Approve a pending access request")
    approve.add_argument("entry_id", type=int)

    reject = sub.add_parser("reject", help="Reject a pending access request")
    reject.add_argument("entry_id", type=int)
    reject.add_argument("--reason", default=None)

    return parser


def run(args: argparse.Namespace, gate: AuthorizationGate) -> int:
    """Execute one parsed command against gate. Returns the process exit code."""
    if args.command == "invite":
        result = gate.generate_invite_code(
            created_by=args.by, notes=args.notes, expiry_days=args.expiry_days, max_uses=args.max_uses
        )
        if not result.success:
            print(f"  [!] {result.message}")
            return 1
        print(f"  Invite code: {result.code}")
        print(f"  Expires:     {result.expires_at:%Y-%m-%d %H:%M} UTC")
        print(f"  Max uses:    {result.max_uses}")
        return 0

    if args.command == "authorize":
        return _print_result(gate.authorize_identity(args.email, args.phone, created_by=args.by, notes=args.notes))

    if args.command == "domain":
        return _print_result(gate.add_authorized_domain(args.domain, created_by=args.by, notes=args.notes))

    if args.command == "requests":
        entries = gate.list_entries(EntryStatus(args.status))
        if not entries:
            print(f"  No {args.status} entries.")
            return 0
        for entry in entries:
            created = f"{entry.created_at:%Y-%m-%d}" if entry.created_at else "-"
            print(f"  {entry.id:>5}  {entry.kind:<11} {entry.value:<40} {created}")
            for note in entry.notes:
                print(f"         {note}")
        return 0

    if args.command == "approve":
        return _print_result(gate.approve_request(args.entry_id, approved_by=args.by))

    if args.command == "reject":
        return _print_result(gate.reject_request(args.entry_id, rejected_by=args.by, reason=args.reason))

    return 2


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    users = UserStore(db_url=settings.database_url)
    entries = AccessStore(db_url=settings.database_url)
    try:
        gate = AuthorizationGate(users, entries, settings, NotificationDispatcher.from_settings(settings))
        return run(args, gate)
    finally:
        entries.close()
        users.close()


if __name__ == "__main__":
    sys.exit(main())
