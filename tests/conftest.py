"""Shared fixtures: every test gets its own library file and upload dir."""

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Importing server builds the module-level app from the environment;
# point it somewhere disposable so the test run never touches ./data
_import_dir = tempfile.mkdtemp(prefix="bookshelf-tests-")
os.environ.setdefault("BOOKSHELF_DATA_FILE", os.path.join(_import_dir, "library.json"))
os.environ.setdefault("BOOKSHELF_UPLOAD_DIR", os.path.join(_import_dir, "uploads"))

from library import JsonLibraryStore  # noqa: E402
from server import create_app  # noqa: E402
from settings import Settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_file=str(tmp_path / "data" / "library.json"),
        upload_dir=str(tmp_path / "uploads"),
        save_retries=3,
        save_backoff_ms=100,
        open_browser=False,
    )


@pytest.fixture
def store(settings):
    return JsonLibraryStore(settings.data_file)


@pytest.fixture
def client(settings, store):
    """Create a test client for a fresh app."""
    return TestClient(create_app(settings, store))


@pytest.fixture
def upload(client):
    """Upload helper returning the stored record."""
    def _upload(name="book.pdf", content=b"%PDF-1.4 not really a pdf",
                content_type="application/pdf", title=None):
        data = {"title": title} if title is not None else {}
        response = client.post(
            "/upload",
            files={"bookFile": (name, content, content_type)},
            data=data,
            follow_redirects=False,
        )
        assert response.status_code == 303
        return client.get("/api/books").json()[-1]
    return _upload
