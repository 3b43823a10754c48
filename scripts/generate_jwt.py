from __future__ import annotations

import argparse
import os
from datetime import datetime, timedelta

import jwt

from backend.app.auth import ADMIN, OWNER, SERVICE

KNOWN_ROLES = (OWNER, ADMIN, SERVICE)


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a bearer token for the zapdesk API.")
    parser.add_argument("--secret", default=os.getenv("JWT_SECRET", ""))
    parser.add_argument("--subject", required=True, help="Tenant user id, or a worker name for service tokens.")
    parser.add_argument("--roles", default=OWNER, help=f"Comma-separated, any of: {', '.join(KNOWN_ROLES)}.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default=os.getenv("JWT_ALGORITHM", "HS256"))
    args = parser.parse_args()

    if not args.secret:
        parser.error("--secret or JWT_SECRET is required")
    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(KNOWN_ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
