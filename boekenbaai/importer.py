"""Bulk import of books, students and teachers from spreadsheet rows.

Each row is matched on its natural key (normalized barcode for books,
case-insensitive username for people). A match is merged field by field: a
field only changes when the row carries a non-empty value, and a row that
changes nothing is reported as ``unchanged``. Rows without a match create new
records. Rows that cannot be applied are skipped with a reason.

All rows of one batch are applied in a single transaction; the batch is
saved once, together with one summary history entry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from boekenbaai.auth import SessionRegistry, generate_password, hash_password
from boekenbaai.book import BIBLIOGRAPHIC_FIELDS, Book
from boekenbaai.config import settings
from boekenbaai.errors import LibraryError
from boekenbaai.history import append_history, utc_now_iso
from boekenbaai.library import (
    Library,
    book_field_value,
    get_or_create_class,
    link_student,
    link_teacher,
)
from boekenbaai.models import (
    DEFAULT_FOLDER_COLOR,
    TEACHER,
    Folder,
    LibraryDocument,
    StaffAccount,
    Student,
    new_id,
)
from boekenbaai.normalize import normalize_header, normalize_page_count_value, parse_multi_value_field
from boekenbaai.services.isbn_lookup import IsbnMetadataCache

logger = logging.getLogger(__name__)

USERNAME_TAKEN = "username already in use"

BOOK_COLUMNS = {
    "title": ("titel", "title"),
    "author": ("auteur", "author", "schrijver"),
    "barcode": ("barcode", "isbn", "ean"),
    "description": ("beschrijving", "description", "omschrijving"),
    "publisher": ("uitgever", "publisher"),
    "published_year": ("jaar", "publicatiejaar", "verschijningsjaar", "year", "publishedyear"),
    "page_count": ("pagina's", "paginas", "aantal pagina's", "pages", "pagecount"),
    "language": ("taal", "language"),
    "cover_url": ("cover", "coverurl", "omslag"),
    "tags": ("tags", "thema", "thema's", "genre", "trefwoorden"),
    "cover_color": ("kleur", "covercolor"),
    "suitable_for_exam_list": ("leeslijst", "examenlijst", "suitableforexamlist"),
}
FOLDER_COLUMNS = ("map", "folder", "categorie")
COPIES_COLUMNS = ("aantal", "exemplaren", "copies")

PERSON_COLUMNS = {
    "name": ("naam", "name", "leerling", "docent", "volledige naam"),
    "username": ("gebruikersnaam", "username", "login"),
    "password": ("wachtwoord", "password"),
    "grade": ("leerjaar", "grade"),
    "classes": ("klas", "klassen", "klasnaam", "class", "classes", "groep"),
}

# Book attribute -> key in a normalized ISBN metadata result
_METADATA_KEYS = {
    "description": "description",
    "publisher": "publisher",
    "published_year": "publishedYear",
    "page_count": "pageCount",
    "language": "language",
    "cover_url": "coverUrl",
    "tags": "tags",
}

_CAMEL_CASE = {
    "title": "title",
    "author": "author",
    "description": "description",
    "publisher": "publisher",
    "published_year": "publishedYear",
    "page_count": "pageCount",
    "language": "language",
    "cover_url": "coverUrl",
    "tags": "tags",
    "cover_color": "coverColor",
    "suitable_for_exam_list": "suitableForExamList",
    "folder_id": "folderId",
    "metadata_isbn": "metadataIsbn",
}


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Lower-case and trim the headers of one spreadsheet row."""
    normalized = {}
    for key, value in (row or {}).items():
        header = normalize_header(key)
        if header and header not in normalized:
            normalized[header] = value
    return normalized


def pick(row: Dict[str, Any], aliases: Sequence[str]) -> str:
    """First non-empty value among the alias columns, as trimmed text."""
    for alias in aliases:
        value = row.get(alias)
        if value is None:
            continue
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        text = str(value).strip()
        if text:
            return text
    return ""


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


@dataclass
class ImportReport:
    """Outcome of one import batch."""

    kind: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)
    classes_created: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)

    @property
    def accounts(self) -> List[Dict[str, Any]]:
        """Created accounts plus updated accounts whose password was set."""
        return [
            record for record in self.records
            if record["status"] == "created" or (record["status"] == "updated" and record.get("password"))
        ]

    def skip(self, row_number: int, reason: str, **details: Any) -> None:
        entry = {"row": row_number}
        entry.update(details)
        entry["reason"] = reason
        self.skipped.append(entry)

    def add(self, record: Dict[str, Any]) -> None:
        status = record["status"]
        if status == "created":
            self.created += 1
        elif status == "updated":
            self.updated += 1
        else:
            self.unchanged += 1
        self.records.append(record)

    def summary(self) -> str:
        return (
            f"{self.created} created, {self.updated} updated, "
            f"{self.unchanged} unchanged, {len(self.skipped)} skipped"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": list(self.skipped),
            "records": list(self.records),
        }
        if self.kind == "books":
            data["books"] = list(self.records)
        else:
            data["accounts"] = self.accounts
            data["classesCreated"] = self.classes_created
        return data


@dataclass
class _BookRow:
    row_number: int
    barcode: str
    values: Dict[str, Any]
    folder: str
    copies: int


class Importer:
    """Apply spreadsheet rows to the library."""

    def __init__(
        self,
        library: Library,
        isbn_cache: Optional[IsbnMetadataCache] = None,
        sessions: Optional[SessionRegistry] = None,
        enrich_default: Optional[bool] = None,
    ):
        self.library = library
        self.isbn_cache = isbn_cache
        self.sessions = sessions if sessions is not None else library.sessions
        self.enrich_default = enrich_default

    def _enrichment_enabled(self, enrich_isbn: Optional[bool]) -> bool:
        if enrich_isbn is not None:
            return bool(enrich_isbn)
        if self.enrich_default is not None:
            return bool(self.enrich_default)
        return settings.import_enrich_isbn

    # ------------------------- Books ------------------------- #
    def _parse_book_row(self, row_number: int, row: Dict[str, Any], report: ImportReport) -> Optional[_BookRow]:
        row = normalize_row(row)
        values = {}
        for attribute, aliases in BOOK_COLUMNS.items():
            text = pick(row, aliases)
            if text:
                values[attribute] = book_field_value(attribute, text)
        values = {key: value for key, value in values.items() if not _is_empty(value)}

        barcode = values.pop("barcode", "")
        title = values.get("title", "")
        author = values.get("author", "")
        if not title or not author or not barcode:
            report.skip(
                row_number,
                "missing title, author or barcode",
                title=title or pick(row, BOOK_COLUMNS["title"]),
                barcode=barcode or pick(row, BOOK_COLUMNS["barcode"]),
            )
            return None

        copies = normalize_page_count_value(pick(row, COPIES_COLUMNS))
        return _BookRow(
            row_number=row_number,
            barcode=barcode,
            values=values,
            folder=pick(row, FOLDER_COLUMNS),
            copies=copies or 1,
        )

    @staticmethod
    def _matching_copies(document: LibraryDocument, parsed: _BookRow) -> Tuple[List[Book], bool]:
        """Existing copies the row refers to; the flag is False when the row matches no group."""
        copies = document.books_by_barcode(parsed.barcode)
        if not copies:
            return [], True
        titles = {book.title.casefold() for book in copies}
        if len(titles) == 1:
            return copies, True
        wanted = parsed.values["title"].casefold()
        matched = [book for book in copies if book.title.casefold() == wanted]
        return matched, bool(matched)

    def _needs_lookup(self, document: LibraryDocument, parsed: _BookRow) -> bool:
        copies, matched = self._matching_copies(document, parsed)
        if not matched:
            return False
        for attribute in BIBLIOGRAPHIC_FIELDS:
            if attribute in parsed.values:
                continue
            if not copies or any(_is_empty(getattr(book, attribute)) for book in copies):
                return True
        return False

    async def _prefetch_metadata(self, parsed_rows: List[_BookRow]) -> Dict[str, Dict[str, Any]]:
        """Look up metadata for the rows that would keep empty bibliographic fields."""
        if self.isbn_cache is None or not parsed_rows:
            return {}
        snapshot = self.library.snapshot()
        barcodes = []
        for parsed in parsed_rows:
            if parsed.barcode not in barcodes and self._needs_lookup(snapshot, parsed):
                barcodes.append(parsed.barcode)
        if not barcodes:
            return {}
        results = await asyncio.gather(*(self.isbn_cache.lookup(barcode) for barcode in barcodes))
        return dict(zip(barcodes, results))

    @staticmethod
    def _enrich(book: Book, metadata: Dict[str, Any]) -> List[str]:
        filled = []
        if not metadata.get("found"):
            return filled
        for attribute in BIBLIOGRAPHIC_FIELDS:
            value = metadata.get(_METADATA_KEYS[attribute])
            if _is_empty(getattr(book, attribute)) and not _is_empty(value):
                setattr(book, attribute, list(value) if isinstance(value, list) else value)
                filled.append(attribute)
        if filled and not book.metadata_isbn:
            book.metadata_isbn = book.barcode
        return filled

    def _resolve_folder(self, document: LibraryDocument, name: str) -> Optional[str]:
        if not name:
            return None
        folder = document.find_folder_by_name(name)
        if folder is None:
            folder = Folder(id=new_id(), name=name, color=DEFAULT_FOLDER_COLOR)
            document.folders.append(folder)
        return folder.id

    def _apply_book_row(self, document: LibraryDocument, parsed: _BookRow,
                        metadata: Optional[Dict[str, Any]], report: ImportReport) -> None:
        copies, matched = self._matching_copies(document, parsed)
        if not matched:
            report.skip(
                parsed.row_number,
                "barcode is shared by several titles and none matches the row title",
                title=parsed.values["title"],
                barcode=parsed.barcode,
            )
            return

        values = dict(parsed.values)
        folder_id = self._resolve_folder(document, parsed.folder)
        if folder_id:
            values["folder_id"] = folder_id

        changes: List[str] = []
        if copies:
            status = "updated"
            for book in copies:
                for attribute, value in values.items():
                    if getattr(book, attribute) != value:
                        setattr(book, attribute, value)
                        changes.append(_CAMEL_CASE[attribute])
        else:
            status = "created"
            now = utc_now_iso()
            for _ in range(parsed.copies):
                book = Book(id=new_id(), title=values["title"], author=values["author"],
                            barcode=parsed.barcode, created_at=now)
                for attribute, value in values.items():
                    setattr(book, attribute, value)
                document.books.append(book)
                copies.append(book)

        if metadata is not None:
            for book in copies:
                changes.extend(_CAMEL_CASE[attribute] for attribute in self._enrich(book, metadata))

        changes = list(dict.fromkeys(changes))
        if status == "updated" and not changes:
            status = "unchanged"

        first = copies[0]
        record = {
            "row": parsed.row_number,
            "status": status,
            "id": first.id,
            "ids": [book.id for book in copies],
            "title": first.title,
            "author": first.author,
            "barcode": first.barcode,
            "copies": len(copies),
            "changes": changes,
        }
        if metadata is not None:
            record["enrichment"] = {"source": metadata.get("source"), "found": bool(metadata.get("found"))}
        report.add(record)

    async def import_books(self, rows: Iterable[Dict[str, Any]], enrich_isbn: Optional[bool] = None) -> ImportReport:
        report = ImportReport(kind="books")
        parsed_rows = []
        for index, row in enumerate(rows):
            parsed = self._parse_book_row(index + 2, row, report)
            if parsed:
                parsed_rows.append(parsed)

        metadata: Dict[str, Dict[str, Any]] = {}
        if self._enrichment_enabled(enrich_isbn):
            metadata = await self._prefetch_metadata(parsed_rows)

        # Holds the store lock and writes the file; kept off the event loop.
        await asyncio.to_thread(self._apply_books, parsed_rows, metadata, report)

        logger.info(f"Book import: {report.summary()}")
        return report

    def _apply_books(self, parsed_rows: List[_BookRow], metadata: Dict[str, Dict[str, Any]],
                     report: ImportReport) -> None:
        with self.library.transaction() as document:
            for parsed in parsed_rows:
                try:
                    self._apply_book_row(document, parsed, metadata.get(parsed.barcode), report)
                except LibraryError as exc:
                    report.skip(parsed.row_number, exc.message, title=parsed.values.get("title"),
                                barcode=parsed.barcode)
            self._record_summary(document, report, "books_imported", "books")

    # ------------------------- People ------------------------- #
    def _parse_person_row(self, row_number: int, row: Dict[str, Any], report: ImportReport) -> Optional[Dict[str, Any]]:
        row = normalize_row(row)
        person = {key: pick(row, aliases) for key, aliases in PERSON_COLUMNS.items()}
        person["classes"] = parse_multi_value_field(person["classes"])
        if not person["name"] or not person["username"]:
            report.skip(row_number, "missing name or username",
                        name=person["name"] or "(unknown)", username=person["username"] or "(empty)")
            return None
        if not person["classes"]:
            report.skip(row_number, "missing class", name=person["name"], username=person["username"])
            return None
        return person

    def _link_classes(self, document: LibraryDocument, person, names: List[str],
                      report: ImportReport) -> bool:
        changed = False
        for name in names:
            klass, created = get_or_create_class(document, name)
            if created:
                report.classes_created += 1
            if isinstance(person, Student):
                changed = link_student(klass, person) or changed
            else:
                changed = link_teacher(klass, person) or changed
        return changed

    def _account_record(self, document: LibraryDocument, row_number: int, status: str, person,
                        changes: List[str], password: Optional[str]) -> Dict[str, Any]:
        record = {
            "row": row_number,
            "status": status,
            "id": person.id,
            "name": person.name,
            "username": person.username,
            "classes": document.class_names(person.class_ids),
            "changes": changes,
            "password": password,
        }
        if isinstance(person, Student):
            teacher_names = []
            for class_id in person.class_ids:
                klass = document.find_class(class_id)
                for teacher_id in klass.teacher_ids if klass else []:
                    teacher = document.find_staff(teacher_id)
                    if teacher and teacher.name not in teacher_names:
                        teacher_names.append(teacher.name)
            record["grade"] = person.grade
            record["teachers"] = teacher_names
        return record

    def _apply_person_row(self, document: LibraryDocument, row_number: int, row: Dict[str, Any],
                          kind: str, report: ImportReport, revoke: List[str]) -> None:
        username = row["username"]
        if kind == "students":
            existing = document.find_student_by_username(username)
        else:
            existing = document.find_staff_by_username(username)
            if existing and not existing.is_teacher:
                existing = None

        if existing is None and document.is_username_taken(username):
            report.skip(row_number, USERNAME_TAKEN, name=row["name"], username=username)
            return

        password = row["password"] or None
        if existing is None:
            password = password or generate_password(settings.generated_password_length)
            if kind == "students":
                person = Student(id=new_id(), name=row["name"], username=username, grade=row["grade"])
                document.students.append(person)
            else:
                person = StaffAccount(id=new_id(), name=row["name"], username=username, role=TEACHER)
                document.users.append(person)
            person.password_hash = hash_password(password)
            person.must_change_password = True
            self._link_classes(document, person, row["classes"], report)
            report.add(self._account_record(document, row_number, "created", person, [], password))
            return

        person = existing
        changes = []
        if person.name != row["name"]:
            person.name = row["name"]
            changes.append("name")
        if kind == "students" and row["grade"] and person.grade != row["grade"]:
            person.grade = row["grade"]
            changes.append("grade")
        if password:
            person.password_hash = hash_password(password)
            person.must_change_password = True
            revoke.append(person.id)
            changes.append("password")
        if self._link_classes(document, person, row["classes"], report):
            changes.append("classes")

        status = "updated" if changes else "unchanged"
        report.add(self._account_record(document, row_number, status, person, changes, password))

    def _import_people(self, rows: Iterable[Dict[str, Any]], kind: str) -> ImportReport:
        report = ImportReport(kind=kind)
        parsed_rows = []
        for index, row in enumerate(rows):
            parsed = self._parse_person_row(index + 2, row, report)
            if parsed:
                parsed_rows.append((index + 2, parsed))

        revoke: List[str] = []
        with self.library.transaction() as document:
            for row_number, parsed in parsed_rows:
                try:
                    self._apply_person_row(document, row_number, parsed, kind, report, revoke)
                except LibraryError as exc:
                    report.skip(row_number, exc.message, name=parsed["name"], username=parsed["username"])
            self._record_summary(document, report, f"{kind}_imported", kind)

        if self.sessions is not None:
            for person_id in revoke:
                self.sessions.revoke_person(person_id)
        logger.info(f"{kind.capitalize()} import: {report.summary()}")
        return report

    def import_students(self, rows: Iterable[Dict[str, Any]]) -> ImportReport:
        return self._import_people(rows, "students")

    def import_teachers(self, rows: Iterable[Dict[str, Any]]) -> ImportReport:
        return self._import_people(rows, "teachers")

    @staticmethod
    def _record_summary(document: LibraryDocument, report: ImportReport, entry_type: str, noun: str) -> None:
        if not report.changed:
            return
        append_history(document, {
            "type": entry_type,
            "message": f"{report.created} {noun} added, {report.updated} updated via import",
        })
