"""Issue a bearer credential for a marketplace identity.

Usage: ``python -m scripts.create_api_key admin ops-1 --email ops@africonnect.et``
"""
from __future__ import annotations

import argparse

from dotenv import load_dotenv

load_dotenv()

from app.db import get_sessionmaker
from app.models import ApiKey, ApiRole
from app.utils.apikey import gen_key


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("role", choices=[role.value for role in ApiRole])
    parser.add_argument("subject", help="Marketplace user id the key resolves to")
    parser.add_argument("--email")
    parser.add_argument("--name", dest="display_name")
    parser.add_argument("--business-id")
    args = parser.parse_args()

    raw_token, prefix, key_hash = gen_key()
    session = get_sessionmaker()()
    try:
        api_key = ApiKey(
            name=f"{args.role}-{args.subject}-{prefix}",
            prefix=prefix,
            key_hash=key_hash,
            subject=args.subject,
            role=ApiRole(args.role),
            email=args.email,
            display_name=args.display_name,
            business_id=args.business_id,
            is_active=True,
        )
        session.add(api_key)
        session.commit()
        session.refresh(api_key)

        print("API key created. Use it in your Authorization header:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, role: {api_key.role.value})")
    finally:
        session.close()


if __name__ == "__main__":
    main()
