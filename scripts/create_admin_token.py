"""
Issue an administrator token for the admin endpoints.
Usage: ADMIN_NAME=ops python scripts/create_admin_token.py [--days 7]
"""
import argparse
import os
from datetime import timedelta

from hub_connector.core.config import settings
from hub_connector.core.jwt import create_access_token


def create_admin_token():
    parser = argparse.ArgumentParser(description="Issue an administrator token")
    parser.add_argument("--days", type=int, default=7, help="Token lifetime in days")
    args = parser.parse_args()

    if not settings.SECRET_KEY:
        raise SystemExit("SECRET_KEY is not set. Export it (or add it to .env) before issuing tokens.")

    admin_name = os.getenv("ADMIN_NAME", "admin")
    token = create_access_token(admin_name, expires_delta=timedelta(days=args.days))
    print(f"Admin token for {admin_name} (valid {args.days} days):")
    print(f"  {token}")
    print("\nSend it as 'Authorization: Bearer <token>' or in the admin_token cookie.")


if __name__ == "__main__":
    create_admin_token()
