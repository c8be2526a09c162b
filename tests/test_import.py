import asyncio
import threading

import pytest

from boekenbaai.importer import USERNAME_TAKEN, Importer, normalize_row, pick
from boekenbaai.services.isbn_lookup import IsbnMetadataCache
from conftest import build_document

ISBN = "9781234567890"


@pytest.fixture
def importer(lib, fake_source):
    return Importer(lib, isbn_cache=IsbnMetadataCache(sources=[fake_source]))


def _import_books(importer, rows, **kwargs):
    return asyncio.run(importer.import_books(rows, **kwargs))


def test_normalize_row_and_pick():
    row = normalize_row({" Titel ": "Oorlogswinter", "AUTEUR": "Jan Terlouw", "": "ignored"})
    assert row == {"titel": "Oorlogswinter", "auteur": "Jan Terlouw"}
    assert pick({"isbn": 9781234567890.0}, ("barcode", "isbn")) == ISBN
    assert pick({"barcode": "  "}, ("barcode",)) == ""


def test_import_enriches_missing_fields(importer, fake_source, lib):
    rows = [{"Titel": "Nieuw boek", "Auteur": "Schrijver", "Barcode": ISBN, "Beschrijving": ""}]

    report = _import_books(importer, rows, enrich_isbn=True)

    assert report.created == 1
    record = report.records[0]
    assert record["enrichment"] == {"source": "mock-source", "found": True}
    assert fake_source.calls == [ISBN]

    book = lib.snapshot().find_book(record["id"])
    assert book.title == "Nieuw boek"
    assert book.author == "Schrijver"
    assert book.description == "Beschrijving uit metadata"
    assert book.publisher == "Meta Uitgever"
    assert book.published_year == 2010
    assert book.page_count == 321
    assert book.cover_url == "https://example.com/cover.jpg"
    assert book.tags == ["meta", "isbn"]
    assert book.metadata_isbn == ISBN


def test_import_without_enrichment_leaves_fields_empty(importer, fake_source, lib):
    rows = [{"Titel": "Nieuw boek", "Auteur": "Schrijver", "Barcode": ISBN, "Beschrijving": ""}]

    report = _import_books(importer, rows, enrich_isbn=False)

    assert fake_source.calls == []
    assert "enrichment" not in report.records[0]
    book = lib.snapshot().find_book(report.records[0]["id"])
    assert book.description == ""
    assert book.publisher == ""
    assert book.published_year is None


def test_row_values_win_over_metadata(importer, lib):
    rows = [{"Titel": "Nieuw boek", "Auteur": "Schrijver", "Barcode": ISBN, "Uitgever": "Eigen Uitgave"}]

    report = _import_books(importer, rows, enrich_isbn=True)

    book = lib.snapshot().find_book(report.records[0]["id"])
    assert book.publisher == "Eigen Uitgave"
    assert book.description == "Beschrijving uit metadata"


def test_reimport_is_idempotent(importer, lib, data_path):
    rows = [
        {"Titel": "Oorlogswinter", "Auteur": "Jan Terlouw", "Barcode": "978-90-475-0000-1",
         "Map": "Klassiekers", "Aantal": "2"},
        {"Titel": "Koning van Katoren", "Auteur": "Jan Terlouw", "Barcode": "9789025870404"},
    ]
    first = _import_books(importer, rows, enrich_isbn=False)
    assert (first.created, first.updated, first.unchanged) == (2, 0, 0)
    assert first.records[0]["copies"] == 2

    before = data_path.read_bytes()
    second = _import_books(importer, rows, enrich_isbn=False)

    assert (second.created, second.updated, second.unchanged) == (0, 0, 2)
    assert data_path.read_bytes() == before
    document = lib.snapshot()
    assert len(document.books) == 3
    assert len(document.folders) == 1
    assert [entry["type"] for entry in document.history] == ["books_imported"]


def test_reimport_updates_changed_fields_on_every_copy(importer, lib):
    rows = [{"Titel": "Oorlogswinter", "Auteur": "Jan Terlouw", "Barcode": "9789047500001", "Aantal": "2"}]
    _import_books(importer, rows, enrich_isbn=False)

    rows[0]["Beschrijving"] = "Een klassieker"
    report = _import_books(importer, rows, enrich_isbn=False)

    assert report.updated == 1
    assert report.records[0]["changes"] == ["description"]
    assert {book.description for book in lib.snapshot().books} == {"Een klassieker"}


def test_rows_missing_required_fields_are_skipped(importer):
    rows = [
        {"Titel": "Zonder auteur", "Barcode": "9789047500001"},
        {"Titel": "Geldig", "Auteur": "Iemand", "Barcode": "9789047500002"},
        {"Titel": "Zonder barcode", "Auteur": "Iemand", "Barcode": "n.v.t."},
    ]

    report = _import_books(importer, rows, enrich_isbn=False)

    assert report.created == 1
    assert [entry["row"] for entry in report.skipped] == [2, 4]
    assert report.skipped[0]["reason"] == "missing title, author or barcode"


def test_shared_barcode_row_with_unknown_title_is_skipped(barcode_library):
    importer = Importer(barcode_library)
    rows = [
        {"Titel": "Onbekend", "Auteur": "Iemand", "Barcode": "12345"},
        {"Titel": "Het mysterie", "Auteur": "Auteur B", "Barcode": "12345", "Beschrijving": "Spannend"},
    ]

    report = _import_books(importer, rows, enrich_isbn=False)

    assert [entry["row"] for entry in report.skipped] == [2]
    assert report.updated == 1
    document = barcode_library.snapshot()
    assert document.find_book("copy-b1").description == "Spannend"
    assert document.find_book("copy-a1").description == ""


def test_existing_book_is_enriched_once(importer, fake_source, write_document, lib):
    write_document(build_document(books=[
        {"id": "b1", "title": "Metadata title", "author": "Iemand", "barcode": ISBN},
    ]))
    rows = [{"Titel": "Metadata title", "Auteur": "Iemand", "Barcode": ISBN}]

    first = _import_books(importer, rows, enrich_isbn=True)
    second = _import_books(importer, rows, enrich_isbn=True)

    assert first.records[0]["status"] == "updated"
    assert "publisher" in first.records[0]["changes"]
    assert second.records[0]["status"] == "unchanged"
    assert fake_source.calls == [ISBN]


def test_import_report_to_dict_for_books(importer):
    report = _import_books(importer, [{"Titel": "A", "Auteur": "B", "Barcode": "111"}], enrich_isbn=False)
    data = report.to_dict()
    assert data["created"] == 1
    assert data["books"] == data["records"]
    assert "accounts" not in data


def test_book_import_writes_off_the_event_loop(importer, monkeypatch, read_document):
    threads = {}
    apply_books = importer._apply_books

    def recording_apply(*args):
        threads["write"] = threading.get_ident()
        return apply_books(*args)

    monkeypatch.setattr(importer, "_apply_books", recording_apply)

    async def run():
        threads["loop"] = threading.get_ident()
        return await importer.import_books([{"Titel": "A", "Auteur": "B", "Barcode": "111"}], enrich_isbn=False)

    report = asyncio.run(run())

    assert threads["write"] != threads["loop"]
    assert report.to_dict()["created"] == 1
    assert read_document()["books"][0]["title"] == "A"


# ------------------------- People ------------------------- #
def test_student_import_creates_accounts_and_classes(lib, sessions):
    importer = Importer(lib)
    rows = [
        {"Naam": "Lotte de Vries", "Gebruikersnaam": "lotte", "Klas": "2A"},
        {"Naam": "Milan Jansen", "Gebruikersnaam": "milan", "Klas": "2A, 2B", "Leerjaar": "2"},
    ]

    report = importer.import_students(rows)

    assert report.created == 2
    assert report.classes_created == 2
    accounts = report.to_dict()["accounts"]
    assert len(accounts) == 2
    assert len(accounts[0]["password"]) == 10
    assert accounts[1]["classes"] == ["2A", "2B"]

    document = lib.snapshot()
    lotte = document.find_student_by_username("lotte")
    klass = document.find_class_by_name("2a")
    assert lotte.must_change_password
    assert lotte.class_ids == [klass.id]
    assert sorted(klass.student_ids) == sorted([lotte.id, document.find_student_by_username("milan").id])
    assert document.history[0]["type"] == "students_imported"


def test_student_import_skips_invalid_rows(barcode_library):
    importer = Importer(barcode_library)
    rows = [
        {"Naam": "Nep Admin", "Gebruikersnaam": "ADMIN", "Klas": "1A"},
        {"Naam": "Zonder klas", "Gebruikersnaam": "zonder"},
        {"Naam": "", "Gebruikersnaam": "leeg", "Klas": "1A"},
    ]

    report = importer.import_students(rows)

    assert report.created == 0
    assert [(entry["row"], entry["reason"]) for entry in report.skipped] == [
        (3, "missing class"),
        (4, "missing name or username"),
        (2, USERNAME_TAKEN),
    ]
    assert barcode_library.snapshot().classes == []


def test_student_reimport_with_password_revokes_sessions(lib, sessions):
    importer = Importer(lib)
    importer.import_students([{"Naam": "Lotte", "Gebruikersnaam": "lotte", "Klas": "2A"}])
    student = lib.snapshot().find_student_by_username("lotte")
    session = sessions.create(student.id)

    unchanged = importer.import_students([{"Naam": "Lotte", "Gebruikersnaam": "LOTTE", "Klas": "2A"}])
    assert unchanged.unchanged == 1
    assert sessions.get(session.token) is not None

    report = importer.import_students(
        [{"Naam": "Lotte", "Gebruikersnaam": "lotte", "Klas": "2B", "Wachtwoord": "geheim123"}]
    )

    assert report.updated == 1
    assert report.records[0]["changes"] == ["password", "classes"]
    assert report.to_dict()["accounts"][0]["password"] == "geheim123"
    assert sessions.get(session.token) is None

    student = lib.snapshot().find_student(student.id)
    assert len(student.class_ids) == 2


def test_teacher_import_links_classes(history_library):
    importer = Importer(history_library)
    rows = [
        {"Docent": "Juf Anna", "Gebruikersnaam": "anna", "Klassen": "1A; 1B"},
        {"Docent": "Meester Kees", "Gebruikersnaam": "kees", "Klassen": "3C"},
    ]

    report = importer.import_teachers(rows)

    assert (report.created, report.updated) == (1, 1)
    assert report.classes_created == 1
    document = history_library.snapshot()
    anna = document.find_staff("t1")
    assert sorted(anna.class_ids) == ["c1", "c2"]
    assert "t1" in document.find_class("c2").teacher_ids
    kees = document.find_staff_by_username("kees")
    assert kees.role == "teacher"
    assert document.find_class_by_name("3C").teacher_ids == [kees.id]
    assert [account["username"] for account in report.to_dict()["accounts"]] == ["kees"]


def test_student_record_lists_class_teachers(history_library):
    report = Importer(history_library).import_students(
        [{"Naam": "Sanne", "Gebruikersnaam": "sanne", "Klas": "1A"}]
    )
    assert report.records[0]["status"] == "unchanged"
    assert report.records[0]["teachers"] == ["Juf Anna"]
