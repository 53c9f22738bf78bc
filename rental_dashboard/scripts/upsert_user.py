#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import os
import secrets
import time

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from rental_dashboard.models.rental_models import AppUser, Profile


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one login user and its company profile from the terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email (stored lower-cased)")
    parser.add_argument("--password", default=None, help="Password to set. Omit to keep the current one.")
    parser.add_argument("--business-name", default=None, help="Company name shown on contracts")
    parser.add_argument("--business-cnpj", default=None, help="Company CNPJ/CPF shown on contracts")
    parser.add_argument("--business-city", default=None, help="City used for the contract jurisdiction clause")
    parser.add_argument("--deactivate", action="store_true", help="Block logins for this user.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    email = args.email.strip().lower()
    if "@" not in email:
        parser.error("--email must be an email address.")
    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 8:
        parser.error("--password must be at least 8 characters.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    with Session(engine) as db, db.begin():
        user = db.execute(select(AppUser).where(func.lower(AppUser.Email) == email)).scalars().first()
        created = user is None
        if created:
            if args.password is None:
                parser.error("--password is required when creating a user.")
            user = AppUser(Email=email, IsActive=True)
            db.add(user)

        if args.password is not None:
            salt = secrets.token_hex(16)
            user.PasswordSalt = salt
            user.PasswordHash = _password_hash(args.password.strip(), salt)
            user.PasswordUpdatedAt = int(time.time())
        user.IsActive = not args.deactivate

        profile = user.Profile
        if profile is None:
            profile = Profile()
            user.Profile = profile
        if args.business_name is not None:
            profile.BusinessName = args.business_name.strip() or None
        if args.business_cnpj is not None:
            profile.BusinessCnpj = args.business_cnpj.strip() or None
        if args.business_city is not None:
            profile.BusinessCity = args.business_city.strip() or None
        db.flush()
        user_id = user.UserID
        is_active = user.IsActive

    print(f"OK user_id={user_id} email={email} created={created} active={is_active}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
