"""Shared fixtures for the campusnet test suite.

Every test gets its own SQLite file. The HTTP client swaps the real
collaborators for fakes: the acting user comes from an ``X-User-Id``
header instead of a JWT, profiles come from an in-memory directory and
attachments go to an in-memory blob store.
"""
import os

os.environ.setdefault("AUTO_CREATE_TABLES", "false")

import pytest
from fastapi import Header
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from campusnet.core.database import get_db, init_db, make_engine
from campusnet.core.dependencies import get_current_user_id
from campusnet.core.identity import get_profiles
from campusnet.core.storage import get_blob_store
from campusnet.main import app

USERS = ("alice", "bob", "carol", "dave", "erin")


class FakeProfiles:
    def __init__(self, user_ids=USERS):
        self.user_ids = set(user_ids)

    def exists(self, user_id: str) -> bool:
        return user_id in self.user_ids

    def get_username(self, user_id: str):
        return self.get_usernames([user_id]).get(user_id)

    def get_usernames(self, user_ids):
        return {uid: f"@{uid}" for uid in user_ids if uid in self.user_ids}


class FakeBlobStore:
    def __init__(self):
        self.files = {}
        self.deleted = []

    def upload(self, owner_id, filename, content, content_type):
        path = f"{owner_id}/{len(self.files)}-{filename}"
        self.files[path] = content
        return {
            "url": f"https://blobs.test/{path}",
            "path": path,
            "filename": filename,
            "mime_type": content_type,
            "size": len(content),
        }

    def delete(self, paths):
        for path in paths:
            self.files.pop(path, None)
            self.deleted.append(path)


@pytest.fixture()
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'campusnet-test.db'}", echo=False)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=True)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def profiles():
    return FakeProfiles()


@pytest.fixture()
def blob_store():
    return FakeBlobStore()


@pytest.fixture()
def client(session_factory, profiles, blob_store):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_user(x_user_id: str = Header(...)):
        return x_user_id

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_current_user_id] = override_user
    app.dependency_overrides[get_profiles] = lambda: profiles
    app.dependency_overrides[get_blob_store] = lambda: blob_store

    yield TestClient(app)

    app.dependency_overrides.clear()
