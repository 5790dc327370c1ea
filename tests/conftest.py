import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["STORAGE_PROVIDER"] = "local"
os.environ["TZ_DEFAULT"] = "Asia/Kolkata"
os.environ["ATTENDANCE_CUTOFF"] = "09:30"
os.environ["ATTENDANCE_ENFORCE_GEOFENCE"] = "true"

from datetime import datetime

import pytest
import pytz
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tradehub.auth.security import create_access_token
from tradehub.db import Base, get_db
from tradehub.main import app
from tradehub.models.models import User
from tradehub.routes.deps import get_clock, get_storage
from tradehub.services.permissions import Principal
from tradehub.storage.local_provider import LocalStorageProvider

OFFICE = (26.1065, 91.5860)
IST = pytz.timezone("Asia/Kolkata")

# Test database
engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def ist(year, month, day, hour, minute=0, second=0) -> datetime:
    """A local wall-clock time in the business timezone, as aware UTC."""
    return IST.localize(datetime(year, month, day, hour, minute, second)).astimezone(pytz.UTC)


def bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role)}"}


@pytest.fixture
def db():
    """Create tables before each test and drop after."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def users(db):
    """One user per role plus a second client and a second sales user."""
    rows = {
        "admin": User(name="Asha Admin", email="admin@test.com", role="admin"),
        "manager": User(name="Manoj Manager", email="manager@test.com", role="manager"),
        "sales": User(name="Sunil Sales", email="sales@test.com", role="sales"),
        "sales2": User(name="Sara Sales", email="sales2@test.com", role="sales"),
        "office": User(name="Olivia Office", email="office@test.com", role="office"),
        "client": User(name="Chandra Traders", email="client@test.com", role="client"),
        "client2": User(name="Kamal Stores", email="kamal@test.com", role="client"),
    }
    db.add_all(rows.values())
    db.commit()
    for u in rows.values():
        db.refresh(u)
    return rows


@pytest.fixture
def principals(users):
    return {key: Principal.from_user(u) for key, u in users.items()}


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "storage"))


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now


@pytest.fixture
def clock():
    return FixedClock(ist(2026, 3, 2, 9, 0))


@pytest.fixture
def client(db, storage, clock):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_clock] = lambda: clock.now
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
