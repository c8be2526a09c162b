import base64

import pytest
from fastapi.testclient import TestClient

from boekenbaai.api import app, get_isbn_cache, get_library, get_login_attempts, get_sessions
from boekenbaai.auth import LoginAttemptRegistry
from boekenbaai.services.isbn_lookup import IsbnMetadataCache


@pytest.fixture
def client(lib, sessions, fake_source):
    cache = IsbnMetadataCache(sources=[fake_source])
    app.dependency_overrides[get_library] = lambda: lib
    app.dependency_overrides[get_sessions] = lambda: sessions
    app.dependency_overrides[get_isbn_cache] = lambda: cache
    attempts = LoginAttemptRegistry()
    app.dependency_overrides[get_login_attempts] = lambda: attempts
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def login(client, username, password):
    response = client.post("/api/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def test_login_and_me(client, barcode_library):
    response = client.post("/api/login", json={"username": "anna", "password": "teacher-pass"})
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["role"] == "teacher"
    assert body["mustChangePassword"] is False

    headers = {"Authorization": f"Bearer {body['token']}"}
    assert client.get("/api/me", headers=headers).json()["username"] == "anna"

    client.post("/api/logout", headers=headers)
    assert client.get("/api/me", headers=headers).status_code == 401


def test_wrong_password_is_rejected(client, barcode_library):
    response = client.post("/api/login", json={"username": "anna", "password": "nope"})
    assert response.status_code == 401


def test_login_is_throttled_per_client(client, barcode_library):
    for _ in range(10):
        assert client.post("/api/login", json={"username": "anna", "password": "nope"}).status_code == 401

    blocked = client.post("/api/login", json={"username": "anna", "password": "teacher-pass"})

    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) > 0
    assert "token" not in blocked.json()


def test_barcode_lookup_groups_titles(client, barcode_library):
    response = client.get("/api/books/barcode/12345")

    assert response.status_code == 200
    groups = {group["title"]: group for group in response.json()["groups"]}
    assert groups["De avonturen"]["availableCopies"] == 1
    assert groups["Het mysterie"]["totalCopies"] == 2

    assert client.get("/api/books/barcode/99999").status_code == 404


def test_staff_check_out_by_id_and_barcode(client, barcode_library):
    headers = login(client, "admin", "admin-pass")

    response = client.post("/api/books/copy-a1/check-out", json={"studentId": "s2", "dueDate": "2024-06-01"},
                           headers=headers)
    assert response.status_code == 200
    assert response.json()["book"]["borrowedBy"] == "s2"
    assert response.json()["book"]["dueDate"] == "2024-06-01"

    response = client.post("/api/books/12345/check-in", json={"studentId": "s2", "title": "Het mysterie"},
                           headers=headers)
    assert response.status_code == 200
    assert response.json()["book"]["id"] == "copy-b1"

    response = client.post("/api/books/12345/check-out", json={"studentId": "s2"}, headers=headers)
    assert response.status_code == 400
    assert sorted(response.json()["titles"]) == ["De avonturen", "Het mysterie"]
    assert response.json()["code"] == "ambiguous_barcode"


def test_lending_errors_map_to_status_codes(client, barcode_library):
    headers = login(client, "anna", "teacher-pass")

    already_borrowed = client.post("/api/books/copy-a2/check-out", json={"studentId": "s2"}, headers=headers)
    assert already_borrowed.status_code == 409
    assert already_borrowed.json()["code"] == "state_conflict"

    no_student = client.post("/api/books/copy-a1/check-out", json={}, headers=headers)
    assert no_student.status_code == 400

    unknown_student = client.post("/api/books/copy-a1/check-out", json={"studentId": "nobody"}, headers=headers)
    assert unknown_student.status_code == 404

    assert client.post("/api/books/copy-a1/check-out", json={"studentId": "s2"}).status_code == 401


def test_student_borrows_for_themselves(client, history_library):
    headers = login(client, "sanne", "student-pass")

    response = client.post("/api/books/b1/check-out", json={"studentId": "s2", "dueDate": "2030-01-01"},
                           headers=headers)

    assert response.status_code == 200
    assert response.json()["book"]["borrowedBy"] == "s1"
    assert response.json()["book"]["dueDate"] is None


def test_admin_only_endpoints(client, barcode_library):
    teacher = login(client, "anna", "teacher-pass")
    admin = login(client, "admin", "admin-pass")
    payload = {"title": "Nieuw", "author": "Iemand", "barcode": "555", "copies": 2}

    assert client.post("/api/books", json=payload, headers=teacher).status_code == 403

    response = client.post("/api/books", json=payload, headers=admin)
    assert response.status_code == 201
    assert len(response.json()["books"]) == 2

    duplicate = client.post("/api/books", json=payload, headers=admin)
    assert duplicate.status_code == 409


def test_import_students_from_rows(client, barcode_library):
    headers = login(client, "admin", "admin-pass")
    rows = [{"Naam": "Lotte", "Gebruikersnaam": "lotte", "Klas": "2A"}]

    response = client.post("/api/students/import", json={"rows": rows}, headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["created"] == 1
    assert body["classesCreated"] == 1
    password = body["accounts"][0]["password"]

    student_login = client.post("/api/login", json={"username": "lotte", "password": password})
    assert student_login.json()["mustChangePassword"] is True


def test_import_books_from_base64_csv(client, barcode_library, fake_source):
    headers = login(client, "admin", "admin-pass")
    csv_text = "Titel,Auteur,Barcode\nNieuw boek,Schrijver,9781234567890\n"
    payload = {
        "file": base64.b64encode(csv_text.encode("utf-8")).decode("ascii"),
        "filename": "boeken.csv",
        "enrichIsbn": True,
    }

    response = client.post("/api/books/import", json=payload, headers=headers)

    assert response.status_code == 200
    record = response.json()["books"][0]
    assert record["status"] == "created"
    assert record["enrichment"] == {"source": "mock-source", "found": True}
    assert fake_source.calls == ["9781234567890"]


def test_import_rejects_bad_upload(client, barcode_library):
    headers = login(client, "admin", "admin-pass")
    response = client.post("/api/books/import", json={"file": "%%%", "filename": "x.csv"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "spreadsheet"


def test_history_is_scoped_by_role(client, history_library):
    admin = login(client, "admin", "admin-pass")
    teacher = login(client, "anna", "teacher-pass")
    other_teacher = login(client, "bas", "teacher-pass")
    student = login(client, "sanne", "student-pass")

    def ids(headers, **params):
        return [entry["id"] for entry in client.get("/api/history", headers=headers, params=params).json()]

    assert ids(admin) == ["h3", "h2", "h1"]
    assert ids(teacher) == ["h3", "h1"]
    assert ids(teacher, limit=1) == ["h3"]
    assert ids(other_teacher) == []
    assert ids(student) == ["h3", "h1"]
    assert client.get("/api/history").status_code == 401

    public = client.get("/api/history/public").json()
    assert public[0] == {"title": "Koning van Katoren", "timestamp": "2024-04-10T09:00:00Z"}


def test_teacher_manages_only_own_classes(client, history_library):
    teacher = login(client, "anna", "teacher-pass")

    own = client.post("/api/classes/c1/students", json={"studentId": "s2"}, headers=teacher)
    assert own.status_code == 200
    assert "s2" in own.json()["class"]["studentIds"]

    foreign = client.post("/api/classes/c2/students", json={"studentId": "s1"}, headers=teacher)
    assert foreign.status_code == 403
    assert client.post("/api/classes/nope/students", json={"studentId": "s1"}, headers=teacher).status_code == 404

    classes = client.get("/api/classes", headers=teacher).json()
    assert [klass["id"] for klass in classes] == ["c1"]

    created = client.post("/api/classes", json={"name": "2C", "teacherIds": ["t2"]}, headers=teacher)
    assert created.status_code == 201
    assert created.json()["teacherIds"] == ["t1"]


def test_isbn_lookup_and_stats(client, barcode_library):
    teacher = login(client, "anna", "teacher-pass")
    admin = login(client, "admin", "admin-pass")

    response = client.get("/api/isbn/978-1-234-56789-0", headers=teacher)
    assert response.status_code == 200
    assert response.json()["title"] == "Metadata title"

    assert client.get("/api/isbn-cache/stats", headers=teacher).status_code == 403
    stats = client.get("/api/isbn-cache/stats", headers=admin).json()
    assert stats["outbound"] == 1


def test_password_reset_revokes_sessions(client, history_library):
    admin = login(client, "admin", "admin-pass")
    student = login(client, "sanne", "student-pass")

    response = client.post("/api/accounts/s1/reset-password", headers=admin)
    assert response.status_code == 200
    new_password = response.json()["password"]

    assert client.get("/api/me", headers=student).status_code == 401
    fresh = login(client, "sanne", new_password)
    changed = client.post("/api/me/password", json={"currentPassword": new_password, "newPassword": "nieuw-geheim"},
                          headers=fresh)
    assert changed.status_code == 200
    assert client.post("/api/login", json={"username": "sanne", "password": "nieuw-geheim"}).json()[
        "mustChangePassword"] is False
