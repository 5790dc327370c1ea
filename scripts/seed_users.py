"""
Seed the local database with one user per role and print a development
bearer token for each.

Usage:
  python scripts/seed_users.py

This script is idempotent: running it multiple times will upsert the same
users based on their email.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from tradehub.auth.security import create_access_token  # noqa: E402
from tradehub.db import SessionLocal, Base, engine  # noqa: E402
from tradehub.models.models import User  # noqa: E402
from tradehub.services.permissions import Role  # noqa: E402


SEED_USERS = [
    ("Asha Admin", "admin@tradehub.example", Role.ADMIN),
    ("Manoj Manager", "manager@tradehub.example", Role.MANAGER),
    ("Sunil Sales", "sales@tradehub.example", Role.SALES),
    ("Olivia Office", "office@tradehub.example", Role.OFFICE),
    ("Chandra Traders", "client@tradehub.example", Role.CLIENT),
]


def ensure_user(session, name: str, email: str, role: Role) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user:
        user.name = name
        user.role = role.value
        user.is_active = True
    else:
        user = User(name=name, email=email, role=role.value, is_active=True)
    session.add(user)
    session.flush()
    return user


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    if engine.url.drivername.startswith("sqlite"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        users = [ensure_user(session, name, email, role) for name, email, role in SEED_USERS]
        session.commit()
        for user in users:
            print(f"{user.role:<8} {user.email:<28} {user.id}")
            print(f"  Bearer {create_access_token(str(user.id), user.role)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
