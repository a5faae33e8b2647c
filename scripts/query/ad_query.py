#!/usr/bin/env python3
"""
Active Directory Query Tool

Command-line access to the directory query engine. Connection settings come
from the environment (see ADQueryConfig.get_config), so a .env file with
AD_SERVER, AD_SEARCH_BASE, AD_USER and AD_KEYRING_SERVICE is enough to get
started.

Examples:
    ad-query user jdoe --membership
    ad-query members "LSA Staff"
    ad-query is-member jdoe "LSA Staff"
    ad-query search "(objectClass=organizationalUnit)" --scope sub --attributes ou
"""

import argparse
import json
import logging
import sys
from typing import Any, List, Optional

from adquery.config import ADQueryConfig
from adquery.exceptions import DirectoryQueryError
from adquery.facade.activedirectory_facade import ActiveDirectoryFacade
from adquery.models.query import QueryParameters

logger = logging.getLogger(__name__)


def _serialize(entry: Any) -> Any:
    if isinstance(entry, list):
        return [_serialize(e) for e in entry]
    if isinstance(entry, dict):
        data = dict(entry)
        groups = getattr(entry, "groups", None)
        if groups is not None:
            data["groups"] = [g.dn for g in groups]
        return data
    return entry


def _print_json(value: Any) -> None:
    print(json.dumps(_serialize(value), indent=2, default=str))


def _attributes(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [a.strip() for a in value.split(",") if a.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Search Active Directory and resolve group membership"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--follow-referrals", action="store_true", help="Chase referrals returned by the server"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    user = subparsers.add_parser("user", help="Find a user by sAMAccountName, UPN or DN")
    user.add_argument("username")
    user.add_argument("--membership", action="store_true", help="Include group membership")
    user.add_argument("--attributes", help="Comma separated attribute list")

    group = subparsers.add_parser("group", help="Find a group by cn or DN")
    group.add_argument("group_name")
    group.add_argument("--membership", action="store_true", help="Include group membership")
    group.add_argument("--attributes", help="Comma separated attribute list")

    users = subparsers.add_parser("users", help="Find users matching a filter")
    users.add_argument("filter", nargs="?")
    users.add_argument("--membership", action="store_true", help="Include group membership")

    groups = subparsers.add_parser("groups", help="Find groups matching a filter")
    groups.add_argument("filter", nargs="?")

    members = subparsers.add_parser("members", help="List every user of a group (nested)")
    members.add_argument("group_name")
    members.add_argument("--attributes", help="Comma separated attribute list")

    memberships = subparsers.add_parser("memberships", help="List every group a user belongs to")
    memberships.add_argument("username")

    is_member = subparsers.add_parser("is-member", help="Check a user's group membership")
    is_member.add_argument("username")
    is_member.add_argument("group_name")

    search = subparsers.add_parser("search", help="Run a raw search")
    search.add_argument("filter")
    search.add_argument("--base", help="Search base (default: AD_SEARCH_BASE)")
    search.add_argument("--scope", default="sub", choices=["base", "one", "sub"])
    search.add_argument("--attributes", help="Comma separated attribute list")
    search.add_argument("--size-limit", type=int, default=0)

    deleted = subparsers.add_parser("deleted", help="Search the Deleted Objects container")
    deleted.add_argument("filter", nargs="?", default="(objectClass=*)")

    subparsers.add_parser("test", help="Test the directory connection")

    return parser


def run(args: argparse.Namespace, facade: ActiveDirectoryFacade) -> int:
    if args.command == "user":
        user = facade.find_user(args.username, args.membership, _attributes(args.attributes))
        if user is None:
            print(f"User {args.username} not found")
            return 1
        _print_json(user)
    elif args.command == "group":
        group = facade.find_group(args.group_name, args.membership, _attributes(args.attributes))
        if group is None:
            print(f"Group {args.group_name} not found")
            return 1
        _print_json(group)
    elif args.command == "users":
        _print_json(facade.find_users(args.filter, args.membership))
    elif args.command == "groups":
        _print_json(facade.find_groups(args.filter))
    elif args.command == "members":
        users = facade.get_users_for_group(
            args.group_name, QueryParameters(attributes=_attributes(args.attributes))
        )
        if users is None:
            print(f"Group {args.group_name} not found")
            return 1
        _print_json(users)
    elif args.command == "memberships":
        _print_json(facade.get_group_membership_for_user(args.username))
    elif args.command == "is-member":
        is_member = facade.is_user_member_of(args.username, args.group_name)
        print("yes" if is_member else "no")
        return 0 if is_member else 1
    elif args.command == "search":
        _print_json(
            facade.search(
                QueryParameters(
                    filter=args.filter,
                    base_dn=args.base,
                    scope=args.scope,
                    attributes=_attributes(args.attributes),
                    size_limit=args.size_limit,
                )
            )
        )
    elif args.command == "deleted":
        _print_json(facade.find_deleted_objects(args.filter))
    elif args.command == "test":
        ok = facade.test_connection()
        print("Connection successful" if ok else "Connection failed")
        return 0 if ok else 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function to run directory queries from the command line.
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    config = ADQueryConfig.get_config()
    if args.follow_referrals:
        config["referrals"]["enabled"] = True

    try:
        with ActiveDirectoryFacade(config) as facade:
            return run(args, facade)
    except DirectoryQueryError as e:
        logger.error(f"Directory query failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nCancelled", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
