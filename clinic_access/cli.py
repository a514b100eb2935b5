"""
Administrative CLI for the Clinic Access Service.
Create the schema, seed roles and demo data, evaluate permissions, and
generate keys.
"""

import argparse
import sys

from clinic_access.database import create_schema, init_engine
from clinic_access.rbac import effective_permissions, has_permission
from clinic_access.seeds import generate_api_key, generate_secret_key, seed_demo_data, seed_roles
from clinic_access.store import AccessStore


def cmd_init_db(args):
    engine = init_engine()
    create_schema(engine)
    return 0


def cmd_seed(args):
    store = AccessStore(init_engine())
    result = seed_roles(store)
    print(f"[seed] Roles: {result['created']} created, {result['updated']} updated")

    if args.demo:
        summary = seed_demo_data(store, num_clinics=args.clinics, patients_per_clinic=args.patients)
        print("\n[seed] Demo users (keep these keys private):")
        for user in summary["users"]:
            clinic = user["clinic_id"] if user["clinic_id"] is not None else "-"
            print(f"  {user['role']:<13} clinic={clinic:<4} id={user['id']:<4} key={user['api_key']}")
    return 0


def cmd_check(args):
    store = AccessStore(init_engine())
    allowed = has_permission(store, args.user_id, args.clinic_id, args.permission)
    print(f"{'ALLOWED' if allowed else 'DENIED'}: user {args.user_id} "
          f"{args.permission} in clinic {args.clinic_id}")
    return 0 if allowed else 2


def cmd_roles(args):
    store = AccessStore(init_engine())
    for role in store.list_roles():
        perms = effective_permissions(role, store.get_role)
        base = f" (inherits {role.inherits_from})" if role.inherits_from else ""
        print(f"{role.name:<15} priority={role.priority:<4} {len(perms)} permissions{base}")
        if args.verbose:
            for name in perms:
                print(f"    - {name}")
    return 0


def cmd_api_key(args):
    for _ in range(args.count):
        print(generate_api_key())
    return 0


def cmd_secret_key(args):
    print(f"JWT_SECRET_KEY={generate_secret_key()}")
    print("Copy the line above to your .env file", file=sys.stderr)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="clinic-access",
        description="Clinic Access Service administration",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create missing tables").set_defaults(func=cmd_init_db)

    seed = sub.add_parser("seed", help="Seed system roles (and optional demo data)")
    seed.add_argument("--demo", action="store_true", help="Also create demo clinics, staff and patients")
    seed.add_argument("--clinics", type=int, default=2)
    seed.add_argument("--patients", type=int, default=20, help="Patients per clinic")
    seed.set_defaults(func=cmd_seed)

    check = sub.add_parser("check", help="Evaluate one permission for a user in a clinic")
    check.add_argument("user_id", type=int)
    check.add_argument("clinic_id", type=int)
    check.add_argument("permission")
    check.set_defaults(func=cmd_check)

    roles = sub.add_parser("roles", help="List roles with their effective permissions")
    roles.add_argument("-v", "--verbose", action="store_true")
    roles.set_defaults(func=cmd_roles)

    api_key = sub.add_parser("api-key", help="Generate user API keys")
    api_key.add_argument("--count", type=int, default=1)
    api_key.set_defaults(func=cmd_api_key)

    sub.add_parser("secret-key", help="Generate a JWT secret key").set_defaults(func=cmd_secret_key)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
