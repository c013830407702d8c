#!/usr/bin/env python3
"""
Warden -- administrative command line.

Bootstraps and operates the credential store configured by DATABASE_URL:
principals, permission definitions, roles, hierarchy, assignments, overrides,
and session hygiene. Every mutation goes through the same AuthorizationFacade
the API uses.

Usage:
  python main.py create-user alice --org 1
  python main.py create-permission device.read --description "Read device telemetry"
  python main.py create-role nurse --permission device.read
  python main.py grant-role-permission 1 device.write
  python main.py assign-role 1 1 --until 2026-12-31T00:00:00+00:00
  python main.py add-edge 1 2
  python main.py override 1 device.read revoke --notes "on leave"
  python main.py permissions 1 --json
  python main.py sweep-sessions

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: sqlite warden.db)
  SECRET_KEY    Required unless DEBUG=true
"""

import argparse
import getpass
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.main import build_facade
from auth.errors import AuthError
from auth.models import Permission, Role, User
from auth.tokens import hash_password
from core.config import get_settings


def _parse_when(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"'{value}' is not an ISO-8601 timestamp") from exc
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Administer Warden principals, roles, permissions, and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-permission device.read
  python main.py create-role nurse --permission device.read
  python main.py create-user alice
  python main.py assign-role 1 1
  python main.py permissions 1
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create a principal")
    p.add_argument("username")
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.add_argument("--org", type=int, dest="organization_id", help="Organization scope")
    p.add_argument("--dept", type=int, dest="department_id", help="Department scope")

    p = sub.add_parser("create-permission", help="Define a permission")
    p.add_argument("name", help="Dotted permission name, e.g. device.read")
    p.add_argument("--description", default="")

    p = sub.add_parser("create-role", help="Create a role")
    p.add_argument("name")
    p.add_argument("--org", type=int, dest="organization_id", help="Organization scope (omit for system-wide)")
    p.add_argument("--description", default="")
    p.add_argument("--permission", action="append", default=[], help="Granted permission (repeatable)")

    p = sub.add_parser("grant-role-permission", help="Add a permission to a role")
    p.add_argument("role_id", type=int)
    p.add_argument("permission")

    p = sub.add_parser("assign-role", help="Assign a role to a principal")
    p.add_argument("user_id", type=int)
    p.add_argument("role_id", type=int)
    p.add_argument("--from", dest="valid_from", type=_parse_when, metavar="ISO-TIME")
    p.add_argument("--until", dest="valid_until", type=_parse_when, metavar="ISO-TIME")

    p = sub.add_parser("add-edge", help="Make CHILD_ID inherit every permission of PARENT_ID")
    p.add_argument("parent_id", type=int)
    p.add_argument("child_id", type=int)

    p = sub.add_parser("override", help="Grant or revoke one permission for one principal")
    p.add_argument("user_id", type=int)
    p.add_argument("permission")
    p.add_argument("polarity", choices=["grant", "revoke", "clear"])
    p.add_argument("--from", dest="valid_from", type=_parse_when, metavar="ISO-TIME")
    p.add_argument("--until", dest="valid_until", type=_parse_when, metavar="ISO-TIME")
    p.add_argument("--notes")

    p = sub.add_parser("permissions", help="Show a principal's effective permissions")
    p.add_argument("user_id", type=int)
    p.add_argument("--json", action="store_true", help="Output structured JSON")

    sub.add_parser("sweep-sessions", help="Deactivate expired and idle sessions")
    return parser


def _run(args: argparse.Namespace) -> int:
    facade = build_facade(get_settings())
    store = facade.store
    try:
        if args.command == "create-user":
            password = args.password or getpass.getpass("Password: ")
            uid = store.create_user(
                User(
                    username=args.username,
                    hashed_password=hash_password(password),
                    organization_id=args.organization_id,
                    department_id=args.department_id,
                )
            )
            print(f"  Created user {args.username} (id {uid})")

        elif args.command == "create-permission":
            store.create_permission(Permission(name=args.name, description=args.description))
            print(f"  Created permission {args.name}")

        elif args.command == "create-role":
            role_id = store.create_role(
                Role(
                    name=args.name,
                    organization_id=args.organization_id,
                    description=args.description,
                    permissions=args.permission,
                )
            )
            print(f"  Created role {args.name} (id {role_id})")

        elif args.command == "grant-role-permission":
            role = store.get_role(args.role_id)
            if role is None:
                print(f"  [!] Role {args.role_id} does not exist.")
                return 1
            if store.get_permission(args.permission) is None:
                print(f"  [!] Permission '{args.permission}' is not defined.")
                return 1
            facade.set_role_permissions(args.role_id, role.permissions + [args.permission])
            print(f"  Role {role.name} now grants {args.permission}")

        elif args.command == "assign-role":
            facade.assign_role(args.user_id, args.role_id, valid_from=args.valid_from, valid_until=args.valid_until)
            print(f"  Assigned role {args.role_id} to user {args.user_id}")

        elif args.command == "add-edge":
            if facade.add_hierarchy_edge(args.parent_id, args.child_id):
                print(f"  Role {args.child_id} now inherits from role {args.parent_id}")
            else:
                print("  Edge already present.")

        elif args.command == "override":
            if args.polarity == "clear":
                cleared = facade.clear_override(args.user_id, args.permission)
                print(f"  Cleared {cleared} override(s)")
            else:
                setter = facade.grant_override if args.polarity == "grant" else facade.revoke_override
                setter(
                    args.user_id,
                    args.permission,
                    valid_from=args.valid_from,
                    valid_until=args.valid_until,
                    notes=args.notes,
                )
                print(f"  {args.polarity.capitalize()} override on {args.permission} set for user {args.user_id}")

        elif args.command == "permissions":
            resolution = facade.effective_permissions(args.user_id)
            if args.json:
                print(
                    json.dumps(
                        {
                            "user_id": args.user_id,
                            "permissions": list(resolution.permissions),
                            "roles": list(resolution.role_names),
                        },
                        indent=2,
                    )
                )
            else:
                print(f"  Roles: {', '.join(resolution.role_names) or '(none)'}")
                for name in resolution.permissions:
                    print(f"    {name}")
                if not resolution.permissions:
                    print("    (no permissions)")

        elif args.command == "sweep-sessions":
            print(f"  Deactivated {facade.sessions.sweep_expired()} lapsed session(s)")

    except IntegrityError:
        print("  [!] That record already exists.")
        return 1
    except (AuthError, ValueError) as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        facade.audit.shutdown()
        store.close()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = _build_parser().parse_args(argv)
    return _run(args)


if __name__ == "__main__":
    sys.exit(main())
