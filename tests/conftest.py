"""
Pytest fixtures for the video sharing backend.

MongoDB is replaced by MagicMock collections wired in through FastAPI
dependency overrides, so no database server is needed.
"""

import os
import tempfile
from unittest.mock import MagicMock

# Keep import-time media directories out of the working tree
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp())

import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from main import app, get_db, get_media_store  # noqa: E402
from media import MediaStore  # noqa: E402

COLLECTIONS = ("user", "video", "like", "subscription", "comment")


@pytest.fixture
def collections() -> dict:
    return {name: MagicMock(name=f"{name}_collection") for name in COLLECTIONS}


@pytest.fixture
def fake_db(collections: dict) -> MagicMock:
    db = MagicMock(name="db")
    db.__getitem__.side_effect = collections.__getitem__
    return db


@pytest.fixture
def viewer_id() -> ObjectId:
    return ObjectId()


@pytest.fixture
def auth_headers(viewer_id: ObjectId, collections: dict) -> dict:
    """Headers for an authenticated viewer; the user lookup succeeds."""
    collections["user"].find_one.return_value = {"_id": viewer_id}
    return {"X-User-Id": str(viewer_id)}


@pytest.fixture
def media_store(tmp_path, monkeypatch) -> MediaStore:
    monkeypatch.setattr("media.read_duration", lambda path, timeout=None: 42.0)
    return MediaStore(root=str(tmp_path / "uploads"))


@pytest.fixture
def client(fake_db: MagicMock, media_store: MediaStore):
    app.dependency_overrides[get_db] = lambda: fake_db
    app.dependency_overrides[get_media_store] = lambda: media_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
