"""Create an admin API key for the back-office and print it once."""
import argparse

from app.db import get_sessionmaker, init_engine
from app.models.api_key import ApiKey, ApiScope
from app.utils.apikey import gen_key


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--name", default="backoffice-admin")
    parser.add_argument("--email", default="admin@sathvilla.com")
    args = parser.parse_args()

    init_engine()
    SessionLocal = get_sessionmaker()
    db = SessionLocal()

    raw_token, prefix, key_hash = gen_key()
    try:
        api_key = ApiKey(
            name=args.name,
            prefix=prefix,
            key_hash=key_hash,
            scope=ApiScope.admin,
            email=args.email.lower(),
            is_active=True,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("Admin API key created. It will not be shown again:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, email: {api_key.email})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
