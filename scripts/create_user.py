#!/usr/bin/env python3
"""Create a user or attach roles to an existing one (idempotent).

Usage:
  python scripts/create_user.py --email approver@example.com --role approver --password s3cret
  python scripts/create_user.py --email lead@example.com --role admin --tenant acme
"""

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.compliance.models import Role, User
from scripts._db_utils import resolve_database_url, script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", action="append", default=[], help="Role key to attach (repeatable)")
    parser.add_argument("--password", help="Password for a new user (required when creating)")
    parser.add_argument("--name", help="Full name for a new user")
    parser.add_argument("--tenant", default="default", help="Tenant id for a new user")
    args = parser.parse_args()

    email = args.email.strip().lower()
    with script_session(resolve_database_url()) as s:
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user:
            if not args.password:
                print(f"User not found and no --password given: {email}")
                sys.exit(1)
            user = User(
                email=email,
                full_name=args.name,
                tenant_id=args.tenant,
                password_hash=generate_password_hash(args.password),
                is_active=True,
            )
            s.add(user)
            print(f"Created user {email} (tenant {args.tenant})")

        for key in args.role:
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                print(f"Role not found: {key}. Run python scripts/init_db.py first.")
                sys.exit(1)
            if role in (user.roles or []):
                print(f"User already has role {key}: {email}")
                continue
            user.roles.append(role)
            print(f"Role {key} attached to {email}")


if __name__ == "__main__":
    main()
