from __future__ import annotations

import argparse
import getpass
import os
from typing import Iterable, Optional

from sqlmodel import Session

from ..auth import upsert_admin
from ..database import get_engine, init_db


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or reset the admin account")
    parser.add_argument(
        "--username",
        default=os.getenv("SEED_ADMIN_USERNAME", "admin"),
        help="Admin username (default: $SEED_ADMIN_USERNAME or 'admin')",
    )
    parser.add_argument(
        "--password",
        default=os.getenv("SEED_ADMIN_PASSWORD"),
        help="Admin password (default: $SEED_ADMIN_PASSWORD, prompted when unset)",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    password = args.password or getpass.getpass("Admin password: ")
    if not password:
        print("Missing admin password")
        return 1
    engine = get_engine()
    init_db(engine)
    with Session(engine) as session:
        user = upsert_admin(session, username=args.username, password=password)
    print(f"Seeded admin user: {user.username}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
