import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["TZ_DEFAULT"] = "UTC"

from datetime import date, datetime, time, timedelta

import pytest
import pytz
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldclock.db import Base, get_db
from fieldclock.main import app
from fieldclock.models.models import Personnel, PersonnelSchedule, Project, Role, TimeEntry, User

SITE = (41.8781, -87.6298)
# About 0.69 miles north of SITE
FAR = (41.8881, -87.6298)

MONDAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=pytz.UTC)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def api_app(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(api_app):
    return TestClient(api_app)


def make_user(db, username: str, role_name: str = None) -> User:
    user = User(username=username, email=f"{username}@example.com", is_active=True)
    if role_name:
        role = db.query(Role).filter(Role.name == role_name).first()
        if role is None:
            role = Role(name=role_name)
            db.add(role)
        user.roles.append(role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_project(db, **kwargs) -> Project:
    values = dict(
        name="Riverside Roof",
        site_lat=SITE[0],
        site_lng=SITE[1],
        geofence_radius_miles=0.25,
        require_clock_location=True,
        time_clock_enabled=True,
        timezone="UTC",
    )
    values.update(kwargs)
    project = Project(**values)
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def make_personnel(db, first_name: str = "Ana", last_name: str = "Silva", hourly_rate=25, user=None) -> Personnel:
    personnel = Personnel(
        first_name=first_name,
        last_name=last_name,
        hourly_rate=hourly_rate,
        user_id=user.id if user else None,
    )
    db.add(personnel)
    db.commit()
    db.refresh(personnel)
    return personnel


def make_schedule(db, personnel, project, start: time, day: date = MONDAY) -> PersonnelSchedule:
    schedule = PersonnelSchedule(
        personnel_id=personnel.id,
        project_id=project.id,
        scheduled_date=day,
        scheduled_start_time=start,
    )
    db.add(schedule)
    db.commit()
    return schedule


def make_entry(db, personnel, project, day: date, hours: float = 8, hourly_rate=None) -> TimeEntry:
    clock_in_at = at(7, day=day)
    entry = TimeEntry(
        personnel_id=personnel.id,
        project_id=project.id,
        entry_date=day,
        entry_source="manual",
        clock_in_at=clock_in_at,
        clock_out_at=clock_in_at + timedelta(hours=hours),
        total_hours=hours,
        hourly_rate=hourly_rate,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def auth(user) -> dict:
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def admin(db):
    return make_user(db, "admin", "admin")


@pytest.fixture
def worker(db):
    return make_user(db, "worker", "worker")


@pytest.fixture
def project(db):
    return make_project(db)


@pytest.fixture
def personnel(db, worker):
    return make_personnel(db, user=worker)
