"""Lending engine, barcode grouping and administration of the library document.

Every mutating method opens ``Library.transaction()``: the document is loaded
under the writer lock, checked, mutated and saved as a whole. All checks run
before the first mutation, so a failed operation leaves nothing behind.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from boekenbaai.auth import SessionRegistry, generate_password, hash_password, verify_password
from boekenbaai.book import BORROWED, DEFAULT_COVER_COLOR, Book
from boekenbaai.config import settings
from boekenbaai.database import JsonDocumentStore
from boekenbaai.errors import (
    AmbiguousBarcodeError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from boekenbaai.history import CHECK_IN, CHECK_OUT, append_history, utc_now_iso
from boekenbaai.models import (
    DEFAULT_FOLDER_COLOR,
    Folder,
    LibraryDocument,
    LoanRecord,
    SchoolClass,
    StaffAccount,
    Student,
    new_id,
)
from boekenbaai.normalize import (
    normalize_barcode,
    normalize_page_count_value,
    normalize_published_year,
    parse_boolean_flag,
    parse_multi_value_field,
)

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

# camelCase document key -> Book attribute, for fields an admin may edit
_EDITABLE_BOOK_FIELDS = {
    "title": "title",
    "author": "author",
    "barcode": "barcode",
    "description": "description",
    "folderId": "folder_id",
    "tags": "tags",
    "publisher": "publisher",
    "publishedYear": "published_year",
    "pageCount": "page_count",
    "language": "language",
    "coverUrl": "cover_url",
    "coverColor": "cover_color",
    "suitableForExamList": "suitable_for_exam_list",
}


def book_field_value(attribute: str, value: Any) -> Any:
    if attribute == "barcode":
        return normalize_barcode(value)
    if attribute == "tags":
        return parse_multi_value_field(value)
    if attribute == "published_year":
        return normalize_published_year(value)
    if attribute == "page_count":
        return normalize_page_count_value(value)
    if attribute == "suitable_for_exam_list":
        return parse_boolean_flag(value)
    if attribute == "folder_id":
        return value or None
    if attribute == "cover_color":
        return value or DEFAULT_COVER_COLOR
    return "" if value is None else str(value).strip()


def validate_due_date(due_date: Optional[str]) -> Optional[str]:
    """Accept an ISO date (``YYYY-MM-DD``) or nothing."""
    if due_date is None or due_date == "":
        return None
    try:
        return date.fromisoformat(str(due_date)[:10]).isoformat()
    except ValueError as exc:
        raise ValidationError(f"Invalid due date: {due_date!r}") from exc


# ------------------------- Class membership ------------------------- #
# Both sides of a link are always changed together.
def link_student(klass: SchoolClass, student: Student) -> bool:
    changed = False
    if student.id not in klass.student_ids:
        klass.student_ids.append(student.id)
        changed = True
    if klass.id not in student.class_ids:
        student.class_ids.append(klass.id)
        changed = True
    return changed


def unlink_student(klass: SchoolClass, student: Student) -> bool:
    changed = student.id in klass.student_ids or klass.id in student.class_ids
    klass.student_ids = [sid for sid in klass.student_ids if sid != student.id]
    student.class_ids = [cid for cid in student.class_ids if cid != klass.id]
    return changed


def link_teacher(klass: SchoolClass, teacher: StaffAccount) -> bool:
    changed = False
    if teacher.id not in klass.teacher_ids:
        klass.teacher_ids.append(teacher.id)
        changed = True
    if klass.id not in teacher.class_ids:
        teacher.class_ids.append(klass.id)
        changed = True
    return changed


def unlink_teacher(klass: SchoolClass, teacher: StaffAccount) -> bool:
    changed = teacher.id in klass.teacher_ids or klass.id in teacher.class_ids
    klass.teacher_ids = [tid for tid in klass.teacher_ids if tid != teacher.id]
    teacher.class_ids = [cid for cid in teacher.class_ids if cid != klass.id]
    return changed


def get_or_create_class(document: LibraryDocument, name: str) -> Tuple[SchoolClass, bool]:
    """Find a class by case-insensitive name or create it."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Class name is required")
    klass = document.find_class_by_name(name)
    if klass:
        return klass, False
    klass = SchoolClass(id=new_id(), name=name)
    document.classes.append(klass)
    return klass, True


# ------------------------- Results ------------------------- #
@dataclass
class LoanResult:
    book: Book
    student: Student

    def to_dict(self) -> Dict[str, Any]:
        return {"book": self.book.to_dict(), "student": self.student.to_public_dict(include_username=True)}


@dataclass
class BarcodeGroup:
    """All copies under one barcode that carry the same title."""

    id: str
    title: str
    author: str
    total_copies: int
    available_copies: int
    copy_ids: List[str] = field(default_factory=list)

    @property
    def borrowed(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "borrowed": self.borrowed,
            "copyIds": list(self.copy_ids),
        }


@dataclass
class BarcodeLookup:
    barcode: str
    groups: List[BarcodeGroup]
    books: List[Book]

    @property
    def is_ambiguous(self) -> bool:
        return len(self.groups) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "barcode": self.barcode,
            "groups": [group.to_dict() for group in self.groups],
            "books": [book.to_dict() for book in self.books],
        }


def group_copies(books: Iterable[Book]) -> List[BarcodeGroup]:
    """Group copies by case-insensitive title, in order of first appearance."""
    grouped: Dict[Tuple[str, str], List[Book]] = {}
    for book in books:
        grouped.setdefault(book.group_key(), []).append(book)

    groups = []
    for copies in grouped.values():
        available = [book for book in copies if book.is_available]
        representative = available[0] if available else copies[0]
        groups.append(
            BarcodeGroup(
                id=representative.id,
                title=copies[0].title,
                author=copies[0].author,
                total_copies=len(copies),
                available_copies=len(available),
                copy_ids=[book.id for book in copies],
            )
        )
    return groups


def _matches_title(book: Book, title: Optional[str]) -> bool:
    return not title or book.title.casefold() == title.strip().casefold()


class Library:
    """Operations on the library document."""

    def __init__(self, store: Optional[JsonDocumentStore] = None, sessions: Optional[SessionRegistry] = None):
        self.store = store or JsonDocumentStore()
        self.sessions = sessions

    def snapshot(self) -> LibraryDocument:
        """A fresh read-only copy of the document; changes to it are never saved."""
        return self.store.load()

    @contextmanager
    def transaction(self) -> Iterator[LibraryDocument]:
        with self.store.transaction() as document:
            yield document

    # ------------------------- Lookups ------------------------- #
    def get_book(self, book_id: str) -> Book:
        book = self.snapshot().find_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        return book

    def list_books(self, folder: Optional[str] = None, query: Optional[str] = None) -> List[Book]:
        books = self.snapshot().books
        if folder:
            books = [book for book in books if book.folder_id == folder]
        if query:
            term = query.strip().casefold()
            books = [
                book for book in books
                if term in book.title.casefold()
                or term in book.author.casefold()
                or term in book.description.casefold()
                or any(term in tag.casefold() for tag in book.tags)
                or term == book.barcode
            ]
        return books

    def status_summary(self) -> Dict[str, int]:
        books = self.snapshot().books
        borrowed = sum(1 for book in books if book.status == BORROWED)
        return {
            "totalBooks": len(books),
            "borrowedBooks": borrowed,
            "availableBooks": len(books) - borrowed,
            "examListBooks": sum(1 for book in books if book.suitable_for_exam_list),
        }

    def lookup_by_barcode(self, barcode: Any, title: Optional[str] = None) -> BarcodeLookup:
        normalized = normalize_barcode(barcode)
        if not normalized:
            raise ValidationError("Barcode is required")
        copies = [book for book in self.snapshot().books_by_barcode(normalized) if _matches_title(book, title)]
        if not copies:
            raise NotFoundError(f"No book found with barcode {normalized}")
        return BarcodeLookup(barcode=normalized, groups=group_copies(copies), books=copies)

    # ------------------------- Lending ------------------------- #
    def _require_student(self, document: LibraryDocument, student_id: str) -> Student:
        student = document.find_student(student_id)
        if not student:
            raise NotFoundError("Student not found")
        return student

    def _check_out(self, document: LibraryDocument, book: Book, student: Student,
                   due_date: Optional[str]) -> LoanResult:
        if not book.is_available:
            raise StateConflictError(f"'{book.title}' is already borrowed")
        if student.holds(book.id):
            raise StateConflictError(f"'{book.title}' is already on the loan list of {student.name}")
        for record in student.borrowed_books:
            held = document.find_book(record.book_id)
            if held and held.group_key() == book.group_key():
                raise StateConflictError(f"{student.name} already has a copy of '{book.title}'")

        book.mark_borrowed(student.id, due_date)
        student.borrowed_books.append(LoanRecord(book_id=book.id, borrowed_at=utc_now_iso()))
        append_history(document, {
            "type": CHECK_OUT,
            "bookId": book.id,
            "studentId": student.id,
            "message": f"{student.name} borrowed {book.title}",
        })
        logger.info(f"Checked out {book.id} to {student.id}")
        return LoanResult(book=book, student=student)

    def _check_in(self, document: LibraryDocument, book: Book, student: Student) -> LoanResult:
        if book.status != BORROWED:
            raise StateConflictError(f"'{book.title}' is not borrowed")
        if not student.holds(book.id):
            raise StateConflictError(f"'{book.title}' is not on the loan list of {student.name}")

        book.mark_available()
        student.borrowed_books = [record for record in student.borrowed_books if record.book_id != book.id]
        append_history(document, {
            "type": CHECK_IN,
            "bookId": book.id,
            "studentId": student.id,
            "message": f"{student.name} returned {book.title}",
        })
        logger.info(f"Checked in {book.id} from {student.id}")
        return LoanResult(book=book, student=student)

    def check_out(self, book_id: str, student_id: str, due_date: Optional[str] = None) -> LoanResult:
        due_date = validate_due_date(due_date)
        with self.transaction() as document:
            book = document.find_book(book_id)
            if not book:
                raise NotFoundError("Book not found")
            student = self._require_student(document, student_id)
            return self._check_out(document, book, student, due_date)

    def check_in(self, book_id: str, student_id: str) -> LoanResult:
        with self.transaction() as document:
            book = document.find_book(book_id)
            if not book:
                raise NotFoundError("Book not found")
            student = self._require_student(document, student_id)
            return self._check_in(document, book, student)

    def check_out_by_barcode(self, barcode: Any, student_id: str, title: Optional[str] = None,
                             due_date: Optional[str] = None) -> LoanResult:
        due_date = validate_due_date(due_date)
        normalized = normalize_barcode(barcode)
        if not normalized:
            raise ValidationError("Barcode is required")
        with self.transaction() as document:
            student = self._require_student(document, student_id)
            copies = document.books_by_barcode(normalized)
            if not copies:
                raise NotFoundError(f"No book found with barcode {normalized}")
            groups = group_copies(book for book in copies if _matches_title(book, title))
            if not groups:
                raise NotFoundError(f"No book titled '{title}' under barcode {normalized}")
            if len(groups) > 1:
                titles = [group.title for group in groups]
                raise AmbiguousBarcodeError(
                    f"Barcode {normalized} is shared by several titles; choose one", titles=titles
                )
            group = groups[0]
            if group.available_copies == 0:
                raise StateConflictError(f"No copy of '{group.title}' is available")
            return self._check_out(document, document.find_book(group.id), student, due_date)

    def check_in_by_barcode(self, barcode: Any, student_id: str, title: Optional[str] = None) -> LoanResult:
        normalized = normalize_barcode(barcode)
        if not normalized:
            raise ValidationError("Barcode is required")
        with self.transaction() as document:
            student = self._require_student(document, student_id)
            copies = document.books_by_barcode(normalized)
            if not copies:
                raise NotFoundError(f"No book found with barcode {normalized}")
            held = [
                book for book in copies
                if student.holds(book.id) and _matches_title(book, title)
            ]
            if not held:
                raise StateConflictError(f"{student.name} has no borrowed copy with barcode {normalized}")
            titles = [group.title for group in group_copies(held)]
            if len(titles) > 1:
                raise AmbiguousBarcodeError(
                    f"{student.name} borrowed several titles with barcode {normalized}; choose one",
                    titles=titles,
                )
            return self._check_in(document, held[0], student)

    # ------------------------- Book administration ------------------------- #
    def create_book(self, data: Dict[str, Any], copies: int = 1) -> List[Book]:
        """Create ``copies`` copies of a new title. Returns the created books."""
        title = (data.get("title") or "").strip()
        author = (data.get("author") or "").strip()
        barcode = normalize_barcode(data.get("barcode"))
        if not title or not author or not barcode:
            raise ValidationError("Title, author and barcode are required")
        if copies < 1:
            raise ValidationError("At least one copy is required")

        with self.transaction() as document:
            if document.books_by_barcode(barcode):
                raise ConflictError(f"A book with barcode {barcode} already exists")
            folder_id = data.get("folderId") or None
            if folder_id and not document.find_folder(folder_id):
                raise NotFoundError("Folder not found")

            created = []
            now = utc_now_iso()
            for _ in range(copies):
                book = Book(id=new_id(), title=title, author=author, barcode=barcode, created_at=now)
                for key, attribute in _EDITABLE_BOOK_FIELDS.items():
                    if key in ("title", "author", "barcode") or data.get(key) is None:
                        continue
                    setattr(book, attribute, book_field_value(attribute, data[key]))
                document.books.append(book)
                created.append(book)

            append_history(document, {
                "type": "book_created",
                "bookId": created[0].id,
                "message": f"{title} was added to the library ({copies} copies)" if copies > 1
                else f"{title} was added to the library",
            })
            return created

    def update_book(self, book_id: str, data: Dict[str, Any]) -> Book:
        with self.transaction() as document:
            book = document.find_book(book_id)
            if not book:
                raise NotFoundError("Book not found")

            updates = {}
            for key, attribute in _EDITABLE_BOOK_FIELDS.items():
                if key in data and data[key] is not None:
                    updates[attribute] = book_field_value(attribute, data[key])

            if "title" in updates and not updates["title"]:
                raise ValidationError("Title cannot be empty")
            if "author" in updates and not updates["author"]:
                raise ValidationError("Author cannot be empty")
            new_barcode = updates.get("barcode", book.barcode)
            if not new_barcode:
                raise ValidationError("Barcode cannot be empty")
            if new_barcode != book.barcode and document.books_by_barcode(new_barcode):
                raise ConflictError(f"A book with barcode {new_barcode} already exists")
            if updates.get("folder_id") and not document.find_folder(updates["folder_id"]):
                raise NotFoundError("Folder not found")

            for attribute, value in updates.items():
                setattr(book, attribute, value)
            append_history(document, {
                "type": "book_updated",
                "bookId": book.id,
                "message": f"{book.title} was updated",
            })
            return book

    def delete_book(self, book_id: str) -> Book:
        with self.transaction() as document:
            book = document.find_book(book_id)
            if not book:
                raise NotFoundError("Book not found")
            document.books = [b for b in document.books if b.id != book.id]
            for student in document.students:
                student.borrowed_books = [r for r in student.borrowed_books if r.book_id != book.id]
            append_history(document, {
                "type": "book_deleted",
                "message": f"{book.title} was removed from the library",
            })
            return book

    def create_folder(self, name: str, description: str = "", color: Optional[str] = None,
                      exam_list: bool = False) -> Folder:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Folder name is required")
        with self.transaction() as document:
            if document.find_folder_by_name(name):
                raise ConflictError(f"Folder '{name}' already exists")
            folder = Folder(id=new_id(), name=name, description=description or "",
                            color=color or DEFAULT_FOLDER_COLOR, exam_list=bool(exam_list))
            document.folders.append(folder)
            append_history(document, {
                "type": "folder_created",
                "folderId": folder.id,
                "message": f"New folder {folder.name} created",
            })
            return folder

    # ------------------------- People ------------------------- #
    def create_student(self, name: str, username: str, password: Optional[str] = None,
                       grade: str = "") -> Tuple[Student, str]:
        """Create a student account. Returns the student and the plaintext password."""
        name = (name or "").strip()
        username = (username or "").strip()
        if not name or not username:
            raise ValidationError("Name and username are required")
        password = password or generate_password(settings.generated_password_length)

        with self.transaction() as document:
            if document.is_username_taken(username):
                raise ConflictError("Username already in use")
            student = Student(
                id=new_id(),
                name=name,
                username=username,
                password_hash=hash_password(password),
                grade=(grade or "").strip(),
                must_change_password=True,
            )
            document.students.append(student)
            append_history(document, {
                "type": "student_created",
                "studentId": student.id,
                "message": f"New student account created for {student.name}",
            })
            return student, password

    def delete_student(self, student_id: str) -> Student:
        with self.transaction() as document:
            student = self._require_student(document, student_id)
            for book in document.books_borrowed_by(student.id):
                book.mark_available()
            for klass in document.classes:
                unlink_student(klass, student)
            document.students = [s for s in document.students if s.id != student.id]
            append_history(document, {
                "type": "student_deleted",
                "message": f"Student account of {student.name} was removed",
            })
        self._revoke_sessions(student.id)
        return student

    def delete_staff(self, staff_id: str) -> StaffAccount:
        with self.transaction() as document:
            account = document.find_staff(staff_id)
            if not account:
                raise NotFoundError("Account not found")
            for klass in document.classes:
                unlink_teacher(klass, account)
            document.users = [u for u in document.users if u.id != account.id]
        self._revoke_sessions(staff_id)
        return account

    def _find_person(self, document: LibraryDocument, person_id: str):
        person = document.find_student(person_id) or document.find_staff(person_id)
        if not person:
            raise NotFoundError("Account not found")
        return person

    def _revoke_sessions(self, person_id: str) -> None:
        if self.sessions is not None:
            self.sessions.revoke_person(person_id)

    def reset_password(self, person_id: str, password: Optional[str] = None) -> str:
        """Set a new password (generated when omitted) that must be changed at next login."""
        password = password or generate_password(settings.generated_password_length)
        with self.transaction() as document:
            person = self._find_person(document, person_id)
            person.password_hash = hash_password(password)
            person.must_change_password = True
        self._revoke_sessions(person_id)
        return password

    def change_password(self, person_id: str, current_password: str, new_password: str) -> None:
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        with self.transaction() as document:
            person = self._find_person(document, person_id)
            if not verify_password(current_password or "", person.password_hash):
                raise PermissionDeniedError("Current password is incorrect")
            person.password_hash = hash_password(new_password)
            person.must_change_password = False

    # ------------------------- Classes ------------------------- #
    def list_classes(self, teacher_id: Optional[str] = None) -> List[SchoolClass]:
        document = self.snapshot()
        if teacher_id is None:
            return document.classes
        teacher = document.find_staff(teacher_id)
        own = set(teacher.class_ids) if teacher else set()
        return [klass for klass in document.classes if teacher_id in klass.teacher_ids or klass.id in own]

    def _require_class(self, document: LibraryDocument, class_id: str) -> SchoolClass:
        klass = document.find_class(class_id)
        if not klass:
            raise NotFoundError("Class not found")
        return klass

    def _teachers(self, document: LibraryDocument, teacher_ids: Iterable[str]) -> List[StaffAccount]:
        teachers = []
        for teacher_id in teacher_ids or []:
            teacher = document.find_staff(teacher_id)
            if teacher and teacher.is_teacher and teacher not in teachers:
                teachers.append(teacher)
        return teachers

    def create_class(self, name: str, teacher_ids: Optional[Iterable[str]] = None) -> SchoolClass:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Class name is required")
        with self.transaction() as document:
            if document.find_class_by_name(name):
                raise ConflictError(f"Class '{name}' already exists")
            klass = SchoolClass(id=new_id(), name=name)
            document.classes.append(klass)
            for teacher in self._teachers(document, teacher_ids or []):
                link_teacher(klass, teacher)
            append_history(document, {
                "type": "class_created",
                "classId": klass.id,
                "message": f"Class {klass.name} created",
            })
            return klass

    def rename_class(self, class_id: str, name: str) -> SchoolClass:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Class name cannot be empty")
        with self.transaction() as document:
            klass = self._require_class(document, class_id)
            other = document.find_class_by_name(name)
            if other and other.id != klass.id:
                raise ConflictError(f"Class '{name}' already exists")
            klass.name = name
            return klass

    def set_class_teachers(self, class_id: str, teacher_ids: Iterable[str]) -> SchoolClass:
        """Replace the teachers of a class; unknown ids and non-teachers are ignored."""
        with self.transaction() as document:
            klass = self._require_class(document, class_id)
            wanted = self._teachers(document, teacher_ids)
            for teacher in document.teachers():
                if teacher not in wanted:
                    unlink_teacher(klass, teacher)
            klass.teacher_ids = [tid for tid in klass.teacher_ids if document.find_staff(tid)]
            for teacher in wanted:
                link_teacher(klass, teacher)
            return klass

    def add_student_to_class(self, class_id: str, student_id: str) -> Tuple[SchoolClass, Student]:
        with self.transaction() as document:
            klass = self._require_class(document, class_id)
            student = self._require_student(document, student_id)
            if link_student(klass, student):
                append_history(document, {
                    "type": "class_student_added",
                    "classId": klass.id,
                    "studentId": student.id,
                    "message": f"{student.name} was added to {klass.name}",
                })
            return klass, student

    def remove_student_from_class(self, class_id: str, student_id: str) -> Tuple[SchoolClass, Student]:
        with self.transaction() as document:
            klass = self._require_class(document, class_id)
            student = self._require_student(document, student_id)
            if unlink_student(klass, student):
                append_history(document, {
                    "type": "class_student_removed",
                    "classId": klass.id,
                    "studentId": student.id,
                    "message": f"{student.name} was removed from {klass.name}",
                })
            return klass, student

    def delete_class(self, class_id: str) -> SchoolClass:
        with self.transaction() as document:
            klass = self._require_class(document, class_id)
            for student in document.students:
                unlink_student(klass, student)
            for teacher in document.users:
                if teacher.is_teacher:
                    unlink_teacher(klass, teacher)
            document.classes = [c for c in document.classes if c.id != klass.id]
            append_history(document, {
                "type": "class_deleted",
                "message": f"Class {klass.name} was removed",
            })
            return klass

