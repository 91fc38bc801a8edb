from pathlib import Path
import tempfile

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from parcel_wms.db import Base
import parcel_wms.main as main


@pytest.fixture()
def session_factory():
    db_file = Path(tempfile.mkdtemp()) / "test_wms.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def client_and_db(monkeypatch, session_factory):
    monkeypatch.setattr(main, "SessionLocal", session_factory)
    with session_factory() as db:
        main.seed_admin(db)

    with TestClient(main.app) as client:
        login = client.post("/auth/login", json={"username": "admin", "password": "admin"})
        token = login.json()["token"]
        headers = {"Authorization": f"Bearer {token}"}
        yield client, session_factory, headers
