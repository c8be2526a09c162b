import asyncio
import json

import pytest

from boekenbaai.auth import SessionRegistry, hash_password
from boekenbaai.database import JsonDocumentStore
from boekenbaai.library import Library


class FakeSource:
    """In-memory metadata source that counts its calls."""

    def __init__(self, name="fake", fixtures=None, delay=0.0, error=None):
        self.name = name
        self.fixtures = fixtures or {}
        self.delay = delay
        self.error = error
        self.calls = []

    async def fetch(self, isbn):
        self.calls.append(isbn)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        fixture = self.fixtures.get(isbn)
        return dict(fixture) if fixture is not None else None


def build_document(**collections):
    document = {"books": [], "students": [], "users": [], "classes": [], "folders": [], "history": []}
    document.update(collections)
    return document


def _copy(book_id, title, author, status="available", borrowed_by=None):
    return {
        "id": book_id,
        "title": title,
        "author": author,
        "barcode": "12345",
        "status": status,
        "borrowedBy": borrowed_by,
        "dueDate": None,
        "tags": [],
    }


@pytest.fixture
def data_path(tmp_path):
    return tmp_path / "db.json"


@pytest.fixture
def write_document(data_path):
    """Write a raw document to the test data file."""

    def _write(document):
        data_path.write_text(json.dumps(document), encoding="utf-8")
        return data_path

    return _write


@pytest.fixture
def read_document(data_path):
    def _read():
        return json.loads(data_path.read_text(encoding="utf-8"))

    return _read


@pytest.fixture
def store(data_path):
    return JsonDocumentStore(data_path)


@pytest.fixture
def sessions():
    return SessionRegistry()


@pytest.fixture
def lib(store, sessions):
    return Library(store, sessions=sessions)


@pytest.fixture
def barcode_library(write_document, lib):
    """Two titles share barcode 12345; s1 and s2 each hold one copy."""
    write_document(build_document(
        books=[
            _copy("copy-a1", "De avonturen", "Auteur A"),
            _copy("copy-a2", "De avonturen", "Auteur A", status="borrowed", borrowed_by="s1"),
            _copy("copy-b1", "Het mysterie", "Auteur B", status="borrowed", borrowed_by="s2"),
            _copy("copy-b2", "Het mysterie", "Auteur B"),
        ],
        students=[
            {"id": "s1", "name": "Sanne", "username": "sanne",
             "borrowedBooks": [{"bookId": "copy-a2", "borrowedAt": "2024-04-01T10:00:00Z"}]},
            {"id": "s2", "name": "Daan", "username": "daan",
             "borrowedBooks": [{"bookId": "copy-b1", "borrowedAt": "2024-04-02T10:00:00Z"}]},
        ],
        users=[
            {"id": "admin", "name": "Admin", "username": "admin",
             "passwordHash": hash_password("admin-pass"), "role": "admin"},
            {"id": "t1", "name": "Juf Anna", "username": "anna",
             "passwordHash": hash_password("teacher-pass"), "role": "teacher", "classIds": []},
        ],
    ))
    return lib


@pytest.fixture
def history_library(write_document, lib):
    """Three students in three classes; t1 teaches c1, t2 teaches nothing."""
    write_document(build_document(
        students=[
            {"id": "s1", "name": "Sanne", "username": "sanne", "classIds": ["c1"],
             "passwordHash": hash_password("student-pass")},
            {"id": "s2", "name": "Daan", "username": "daan", "classIds": ["c2"]},
            {"id": "s3", "name": "Noor", "username": "noor", "classIds": ["c3"]},
        ],
        users=[
            {"id": "admin", "name": "Admin", "username": "admin",
             "passwordHash": hash_password("admin-pass"), "role": "admin"},
            {"id": "t1", "name": "Juf Anna", "username": "anna",
             "passwordHash": hash_password("teacher-pass"), "role": "teacher", "classIds": ["c1"]},
            {"id": "t2", "name": "Meester Bas", "username": "bas",
             "passwordHash": hash_password("teacher-pass"), "role": "teacher", "classIds": []},
        ],
        classes=[
            {"id": "c1", "name": "1A", "studentIds": ["s1"], "teacherIds": ["t1"]},
            {"id": "c2", "name": "1B", "studentIds": ["s2"], "teacherIds": []},
            {"id": "c3", "name": "1C", "studentIds": ["s3"], "teacherIds": []},
        ],
        books=[
            {"id": "b1", "title": "Koning van Katoren", "author": "Jan Terlouw", "barcode": "9789025870404"},
        ],
        history=[
            {"id": "h3", "type": "check_out", "bookId": "b1", "studentId": "s1",
             "timestamp": "2024-04-10T09:00:00Z", "message": "Sanne borrowed Koning van Katoren"},
            {"id": "h2", "type": "check_out", "bookId": "b1", "studentId": "s2",
             "timestamp": "2024-04-05T09:00:00Z", "message": "Daan borrowed Koning van Katoren"},
            {"id": "h1", "type": "check_in", "bookId": "b1", "studentId": "s1",
             "timestamp": "2024-04-01T09:00:00Z", "message": "Sanne returned Koning van Katoren"},
        ],
    ))
    return lib


@pytest.fixture
def metadata_fixtures():
    return {
        "9781234567890": {
            "title": "Metadata title",
            "author": "Metadata auteur",
            "description": "Beschrijving uit metadata",
            "publisher": "Meta Uitgever",
            "publishedAt": "2010",
            "pageCount": 321,
            "language": "nl",
            "coverUrl": "https://example.com/cover.jpg",
            "tags": ["meta", "isbn"],
            "source": "mock-source",
        },
    }


@pytest.fixture
def fake_source(metadata_fixtures):
    return FakeSource(name="mock", fixtures=metadata_fixtures)


@pytest.fixture
def make_source():
    return FakeSource
