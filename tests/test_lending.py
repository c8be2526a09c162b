import pytest

from boekenbaai.errors import (
    AmbiguousBarcodeError,
    ConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from conftest import build_document


@pytest.fixture
def simple_library(write_document, lib):
    write_document(build_document(
        books=[{"id": "b1", "title": "Oorlogswinter", "author": "Jan Terlouw", "barcode": "9789047500001"}],
        students=[
            {"id": "s1", "name": "Sanne", "username": "sanne"},
            {"id": "s2", "name": "Daan", "username": "daan"},
        ],
    ))
    return lib


def test_check_out_and_check_in_round_trip(simple_library, read_document):
    before = simple_library.snapshot().find_book("b1").to_dict()

    result = simple_library.check_out("b1", "s1", due_date="2024-06-01")
    assert result.book.status == "borrowed"
    assert result.book.borrowed_by == "s1"
    assert result.book.due_date == "2024-06-01"
    assert [r.book_id for r in result.student.borrowed_books] == ["b1"]

    stored = read_document()
    assert stored["books"][0]["borrowedBy"] == "s1"
    assert stored["history"][0]["type"] == "check_out"

    simple_library.check_in("b1", "s1")
    document = simple_library.snapshot()
    assert document.find_book("b1").to_dict() == before
    assert document.find_student("s1").borrowed_books == []
    assert [entry["type"] for entry in document.history] == ["check_in", "check_out"]


def test_second_check_out_is_a_state_conflict_without_history(simple_library):
    simple_library.check_out("b1", "s1")

    with pytest.raises(StateConflictError):
        simple_library.check_out("b1", "s2")

    document = simple_library.snapshot()
    assert document.find_book("b1").borrowed_by == "s1"
    assert document.find_student("s2").borrowed_books == []
    assert len(document.history) == 1


def test_check_in_by_other_student_is_rejected(simple_library):
    simple_library.check_out("b1", "s1")
    with pytest.raises(StateConflictError):
        simple_library.check_in("b1", "s2")


def test_check_in_of_available_book_is_rejected(simple_library):
    with pytest.raises(StateConflictError):
        simple_library.check_in("b1", "s1")


def test_unknown_book_or_student(simple_library):
    with pytest.raises(NotFoundError):
        simple_library.check_out("missing", "s1")
    with pytest.raises(NotFoundError):
        simple_library.check_out("b1", "missing")


def test_invalid_due_date_is_rejected(simple_library):
    with pytest.raises(ValidationError):
        simple_library.check_out("b1", "s1", due_date="next tuesday")
    assert simple_library.snapshot().find_book("b1").is_available


def test_barcode_groups(barcode_library):
    lookup = barcode_library.lookup_by_barcode("12345")

    groups = {group.title: group for group in lookup.groups}
    assert len(groups) == 2
    adventures = groups["De avonturen"]
    assert adventures.total_copies == 2
    assert adventures.available_copies == 1
    assert adventures.id == "copy-a1"
    assert groups["Het mysterie"].borrowed == 1
    assert lookup.is_ambiguous


def test_barcode_lookup_with_title_filter(barcode_library):
    lookup = barcode_library.lookup_by_barcode("12345", title="het MYSTERIE")
    assert [group.title for group in lookup.groups] == ["Het mysterie"]

    with pytest.raises(NotFoundError):
        barcode_library.lookup_by_barcode("12345", title="Onbekend")
    with pytest.raises(NotFoundError):
        barcode_library.lookup_by_barcode("99999")
    with pytest.raises(ValidationError):
        barcode_library.lookup_by_barcode("---")


def test_barcode_group_scenario(barcode_library):
    lookup = barcode_library.lookup_by_barcode("12345")
    adventures = next(group for group in lookup.groups if group.title == "De avonturen")

    # s1 already holds copy-a2 of the same title
    with pytest.raises(StateConflictError, match="already has a copy"):
        barcode_library.check_out(adventures.id, "s1")

    result = barcode_library.check_out(adventures.id, "s2")
    assert result.book.id == "copy-a1"
    assert result.book.borrowed_by == "s2"

    returned = barcode_library.check_in_by_barcode("12345", "s2", title="Het mysterie")
    assert returned.book.id == "copy-b1"
    assert returned.book.status == "available"

    borrowed = barcode_library.check_out_by_barcode("12345", "s2", title="Het mysterie")
    assert borrowed.book.title == "Het mysterie"
    assert borrowed.book.borrowed_by == "s2"


def test_check_out_by_shared_barcode_requires_title(barcode_library):
    with pytest.raises(AmbiguousBarcodeError) as excinfo:
        barcode_library.check_out_by_barcode("12345", "s2")
    assert sorted(excinfo.value.titles) == ["De avonturen", "Het mysterie"]


def test_check_in_by_barcode_needs_title_when_student_holds_two_titles(barcode_library):
    barcode_library.check_out("copy-a1", "s2")

    with pytest.raises(AmbiguousBarcodeError):
        barcode_library.check_in_by_barcode("12345", "s2")

    result = barcode_library.check_in_by_barcode("12345", "s2", title="De avonturen")
    assert result.book.id == "copy-a1"


def test_check_in_by_barcode_without_loan(barcode_library):
    with pytest.raises(StateConflictError):
        barcode_library.check_in_by_barcode("12345", "s1", title="Het mysterie")


def test_check_out_by_barcode_when_no_copy_left(barcode_library):
    barcode_library.check_out("copy-b2", "s1")
    with pytest.raises(StateConflictError):
        barcode_library.check_out_by_barcode("12345", "s1", title="Het mysterie")


def test_create_book_with_copies_and_conflict(lib):
    books = lib.create_book({"title": "Kruistocht in spijkerbroek", "author": "Thea Beckman",
                             "barcode": "978-90-477-0001-2", "tags": "historisch, avontuur"}, copies=3)

    assert len(books) == 3
    assert {book.barcode for book in books} == {"9789047700012"}
    assert books[0].tags == ["historisch", "avontuur"]
    assert lib.lookup_by_barcode("9789047700012").groups[0].total_copies == 3

    with pytest.raises(ConflictError):
        lib.create_book({"title": "Ander boek", "author": "Iemand", "barcode": "9789047700012"})
    with pytest.raises(ValidationError):
        lib.create_book({"title": "Zonder barcode", "author": "Iemand"})


def test_update_and_delete_book(simple_library):
    simple_library.check_out("b1", "s1")

    updated = simple_library.update_book("b1", {"description": "Klassieker", "pageCount": "250 p."})
    assert updated.description == "Klassieker"
    assert updated.page_count == 250
    assert updated.borrowed_by == "s1"

    simple_library.delete_book("b1")
    document = simple_library.snapshot()
    assert document.books == []
    assert document.find_student("s1").borrowed_books == []


def test_list_books_and_status(simple_library):
    simple_library.check_out("b1", "s1")
    assert [b.id for b in simple_library.list_books(query="terlouw")] == ["b1"]
    assert simple_library.list_books(query="mysterie") == []
    assert simple_library.status_summary() == {
        "totalBooks": 1,
        "borrowedBooks": 1,
        "availableBooks": 0,
        "examListBooks": 0,
    }


def test_delete_student_returns_books_and_leaves_classes(simple_library):
    klass = simple_library.create_class("2B")
    simple_library.add_student_to_class(klass.id, "s1")
    simple_library.check_out("b1", "s1")

    simple_library.delete_student("s1")

    document = simple_library.snapshot()
    assert document.find_book("b1").is_available
    assert document.find_class(klass.id).student_ids == []


def test_failed_operation_leaves_file_untouched(simple_library, data_path):
    simple_library.check_out("b1", "s1")
    before = data_path.read_bytes()

    with pytest.raises(StateConflictError):
        simple_library.check_out("b1", "s2")

    assert data_path.read_bytes() == before
