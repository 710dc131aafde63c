#!/usr/bin/env python3
"""Operator commands for admin accounts and the persisted application settings.

Usage:
    python scripts/manage.py admin create -u alice -r Sudo
    python scripts/manage.py admin update -i 3 --password
    python scripts/manage.py admin delete --id 3
    python scripts/manage.py admin list
    python scripts/manage.py settings show
    python scripts/manage.py settings set-expire 60
    python scripts/manage.py settings rotate-secret

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    ADMIN_PASSWORD: Password for ``admin create`` / ``admin update`` when --password is omitted

Settings changes apply to running servers on their next settings reload or restart.
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ROLE_CHOICES = ("Super", "Sudo", "Visitor")


def _read_password(explicit: Optional[str], *, prompt: bool = True) -> Optional[str]:
    if explicit:
        return explicit
    env_password = os.environ.get("ADMIN_PASSWORD")
    if env_password:
        return env_password
    if not prompt:
        return None
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise ValueError("passwords do not match")
    return first


def _format_table(headers: Sequence[str], rows: List[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths))]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(cell.ljust(w) for cell, w in zip(row, widths)))
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage OTP auth admins and settings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    groups = parser.add_subparsers(dest="group", required=True)

    admin = groups.add_parser("admin", help="Manage admin accounts")
    admin_cmds = admin.add_subparsers(dest="command", required=True)

    create = admin_cmds.add_parser("create", help="Create an admin")
    create.add_argument("--username", "-u", required=True)
    create.add_argument("--role", "-r", choices=ROLE_CHOICES, default="Visitor")
    create.add_argument("--password", help="Password (or ADMIN_PASSWORD / prompt)")

    update = admin_cmds.add_parser("update", help="Update an admin")
    update.add_argument("--id", "-i", type=int, required=True)
    update.add_argument("--username", "-u")
    update.add_argument("--role", "-r", choices=ROLE_CHOICES)
    update.add_argument(
        "--password",
        nargs="?",
        const="",
        help="New password; pass the flag alone to be prompted",
    )

    delete = admin_cmds.add_parser("delete", help="Delete an admin")
    delete.add_argument("--id", "-i", type=int, required=True)

    admin_cmds.add_parser("list", help="List admins")

    settings = groups.add_parser("settings", help="Manage application settings")
    settings_cmds = settings.add_subparsers(dest="command", required=True)
    settings_cmds.add_parser("show", help="Show current settings")
    set_expire = settings_cmds.add_parser(
        "set-expire", help="Set the access token lifetime"
    )
    set_expire.add_argument("minutes", type=int)
    settings_cmds.add_parser("rotate-secret", help="Generate a new signing secret")
    return parser


def _dispatch(runtime, tx, args) -> None:
    from otpauth.storage.models import AdminRole

    service = runtime.admin
    if args.group == "admin":
        if args.command == "create":
            password = _read_password(args.password)
            admin = service.create_admin(
                tx, args.username, password, AdminRole.parse(args.role)
            )
            print(f"Created admin {admin.username} (id: {admin.id}, role: {admin.role.label})")
        elif args.command == "update":
            password = None
            if args.password is not None:
                password = _read_password(args.password)
            admin = service.update_admin(
                tx,
                args.id,
                username=args.username,
                password=password,
                role=AdminRole.parse(args.role) if args.role else None,
            )
            print(f"Updated admin {admin.username} (id: {admin.id}, role: {admin.role.label})")
        elif args.command == "delete":
            service.delete_admin(tx, args.id)
            print(f"Deleted admin {args.id}")
        elif args.command == "list":
            admins = service.list_admins(tx)
            rows = [
                [
                    str(a.id),
                    a.username,
                    a.role.label,
                    a.created_at.isoformat(timespec="seconds"),
                ]
                for a in admins
            ]
            print(_format_table(["ID", "USERNAME", "ROLE", "CREATED"], rows))
    elif args.group == "settings":
        if args.command == "show":
            setting = service.show_settings(tx)
            print(f"Access token expire: {setting.access_token_expire} minutes")
            print(f"Secret key: {setting.secret_key[:6]}... ({len(setting.secret_key)} chars)")
        elif args.command == "set-expire":
            setting = service.set_access_token_expire(tx, args.minutes)
            print(f"Access token expire set to {setting.access_token_expire} minutes")
        elif args.command == "rotate-secret":
            service.rotate_secret(tx)
            print("Signing secret rotated; previously issued tokens are now invalid")


def run(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # login sessions and rate limits are not used here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from otpauth.service.errors import ServiceError
    from otpauth.service.runtime import get_runtime
    from otpauth.storage.errors import ConstraintViolation

    try:
        runtime = get_runtime()
        tx = runtime.store.begin()
        try:
            _dispatch(runtime, tx, args)
            tx.commit()
        except BaseException:
            tx.rollback()
            raise
    except (ServiceError, ConstraintViolation, ValueError) as exc:
        print(f"Error: {getattr(exc, 'message', str(exc))}")
        return 1
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
