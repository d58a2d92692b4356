#!/usr/bin/env python3
"""
LoanLedger -- operator command line.

Runs against the database named by DATABASE_URL (see core/config.py), with no
HTTP server involved.

Usage:
  python main.py create-user --email admin@example.com --role admin
  python main.py sweep
  python main.py seed
  python main.py audit --action LOAN_CREATE --limit 20
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.models import AuditAction
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.models import Identity, Role
from auth.store import UserStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password, password_too_long
from core.config import get_settings
from ledger.models import Item, Student
from ledger.store import LedgerStore
from ledger.sweeper import OverdueSweeper

# Demo data for a fresh install. Passwords are for local use only.
SEED_USERS = [
    ("admin@example.com", Role.ADMIN, "Admin!234"),
    ("clerk@example.com", Role.CLERK, "Clerk!234"),
    ("auditor@example.com", Role.AUDITOR, "Auditor!234"),
]

SEED_STUDENTS = [
    Student(student_no="STU001", name="John", surname="Smith", room_no="204A"),
    Student(student_no="STU002", name="Emma", surname="Johnson", room_no="305B"),
    Student(student_no="STU003", name="Michael", surname="Brown", room_no="102C"),
    Student(student_no="STU004", name="Sarah", surname="Davis", room_no="401D"),
    Student(student_no="STU005", name="Alex", surname="Wilson", room_no="203A"),
]

SEED_ITEMS = [
    Item(name="HDMI Cable", category="Cables & Adapters", specification="2m HDMI 2.0 cable", asset_tag="HDMI-001"),
    Item(name="USB-C Charger", category="Chargers", specification="65W USB-C PD charger with cable", asset_tag="CHG-001"),
    Item(
        name="Scientific Calculator",
        category="Electronics",
        specification="Casio FX-991ES PLUS scientific calculator",
        asset_tag="CALC-001",
    ),
    Item(name="Ethernet Cable", category="Cables & Adapters", specification="5m Cat6 ethernet cable", asset_tag="ETH-001"),
    Item(name="Wireless Mouse", category="Electronics", specification="Wireless mouse with USB receiver", asset_tag="MOUSE-001"),
    Item(name="USB Hub", category="Electronics", specification="4-port USB 3.0 hub", asset_tag="HUB-001"),
    Item(name="Laptop Stand", category="Accessories", specification="Adjustable aluminum laptop stand", asset_tag="STAND-001"),
    Item(name="Phone Charger", category="Chargers", specification="USB-A to Lightning cable and wall adapter", asset_tag="PHONE-001"),
    Item(name="Desk Lamp", category="Furniture", specification="LED desk lamp with adjustable brightness", asset_tag="LAMP-001"),
    Item(name="Extension Cord", category="Cables & Adapters", specification="3m extension cord with 4 outlets", asset_tag="EXT-001"),
]


def create_user(store: UserStore, email: str, role: Role, password: str) -> Optional[int]:
    """Create one identity. Returns its id, or None if the email is taken."""
    try:
        return store.create_user(Identity(email=email, role=role, hashed_password=hash_password(password)))
    except IntegrityError:
        return None


def seed(user_store: UserStore, ledger_store: LedgerStore) -> dict[str, int]:
    """Insert the demo users, students and items that do not exist yet.

    Safe to run repeatedly. Returns how many of each kind were created.
    """
    created = {"users": 0, "students": 0, "items": 0}
    for email, role, password in SEED_USERS:
        if user_store.get_by_email(email) is None:
            create_user(user_store, email, role, password)
            created["users"] += 1
    for student in SEED_STUDENTS:
        if ledger_store.get_student_by_no(student.student_no) is None:
            ledger_store.create_student(student)
            created["students"] += 1
    for item in SEED_ITEMS:
        if ledger_store.get_item_by_asset_tag(item.asset_tag) is None:
            ledger_store.create_item(item)
            created["items"] += 1
    return created


def _cmd_create_user(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    if password_too_long(password):
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
        return 1
    store = UserStore(get_settings().database_url)
    try:
        user_id = create_user(store, args.email, Role(args.role), password)
    finally:
        store.close()
    if user_id is None:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    print(f"  Created {args.role} user {args.email} (id={user_id})")
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    settings = get_settings()
    ledger_store = LedgerStore(settings.database_url)
    audit_store = AuditStore(settings.database_url)
    try:
        sweeper = OverdueSweeper(
            ledger_store,
            AuditTrail(audit_store),
            max_loan_hours=settings.max_loan_hours,
            interval_seconds=settings.sweep_interval_seconds,
        )
        count = sweeper.run_once()
    finally:
        ledger_store.close()
        audit_store.close()
    print(f"  {count} loan(s) marked overdue.")
    return 0


def _cmd_seed(args: argparse.Namespace) -> int:
    settings = get_settings()
    user_store = UserStore(settings.database_url)
    ledger_store = LedgerStore(settings.database_url)
    try:
        created = seed(user_store, ledger_store)
    finally:
        user_store.close()
        ledger_store.close()
    print(f"  Created {created['users']} user(s), {created['students']} student(s), {created['items']} item(s).")
    if created["users"]:
        print("\n  Demo logins:")
        for email, role, password in SEED_USERS:
            print(f"    {role.value:<8} {email} / {password}")
    return 0


def _cmd_audit(args: argparse.Namespace) -> int:
    store = AuditStore(get_settings().database_url)
    try:
        entries = AuditTrail(store).query(action=args.action, limit=args.limit)
    finally:
        store.close()
    if not entries:
        print("  No audit entries.")
        return 0
    for entry in entries:
        actor = entry.actor_id if entry.actor_id is not None else "-"
        target = f"{entry.entity}#{entry.entity_id}" if entry.entity_id else entry.entity
        print(f"  {entry.at.isoformat(timespec='seconds')}  {entry.action.value:<16} actor={actor:<5} {target}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="loanledger",
        description="Operator commands for the LoanLedger database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email admin@example.com --role admin
  python main.py seed
  python main.py sweep
  python main.py audit --action USER_LOGIN --limit 50
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_user = sub.add_parser("create-user", help="Create an operator account (e.g. the first admin)")
    p_user.add_argument("--email", required=True, help="Login email")
    p_user.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.CLERK.value,
        help="Role: admin, clerk, or auditor (default: clerk)",
    )
    p_user.add_argument("--password", help="Password (prompted when omitted)")
    p_user.set_defaults(func=_cmd_create_user)

    p_sweep = sub.add_parser("sweep", help="Run one overdue sweep now")
    p_sweep.set_defaults(func=_cmd_sweep)

    p_seed = sub.add_parser("seed", help="Insert demo users, students and items (idempotent)")
    p_seed.set_defaults(func=_cmd_seed)

    p_audit = sub.add_parser("audit", help="Print recent audit entries, newest first")
    p_audit.add_argument("--action", choices=[a.value for a in AuditAction], help="Only this action")
    p_audit.add_argument("--limit", type=int, default=50, help="Maximum entries to print (default: 50)")
    p_audit.set_defaults(func=_cmd_audit)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
