"""People, classes, folders and the in-memory library document.

``LibraryDocument`` is the whole persisted JSON document loaded into Python
objects. It carries the lookup helpers the lending and import code use; it
does not enforce any rule by itself.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from boekenbaai.book import Book
from boekenbaai.normalize import normalize_barcode, parse_boolean_flag

TEACHER = "teacher"
ADMIN = "admin"
STAFF_ROLES = (TEACHER, ADMIN)

DEFAULT_FOLDER_COLOR = "#9f86c0"


def new_id() -> str:
    """Fresh identifier for any stored record."""
    return str(uuid.uuid4())


def _id_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    seen: List[str] = []
    for entry in value:
        if entry and entry not in seen:
            seen.append(str(entry))
    return seen


@dataclass
class LoanRecord:
    book_id: str
    borrowed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"bookId": self.book_id, "borrowedAt": self.borrowed_at}


@dataclass
class Student:
    id: str
    name: str
    username: str = ""
    password_hash: str = ""
    grade: str = ""
    must_change_password: bool = False
    class_ids: List[str] = field(default_factory=list)
    borrowed_books: List[LoanRecord] = field(default_factory=list)

    def holds(self, book_id: str) -> bool:
        return any(record.book_id == book_id for record in self.borrowed_books)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "passwordHash": self.password_hash,
            "grade": self.grade,
            "mustChangePassword": self.must_change_password,
            "classIds": list(self.class_ids),
            "borrowedBooks": [record.to_dict() for record in self.borrowed_books],
        }

    def to_public_dict(self, include_username: bool = False) -> Dict[str, Any]:
        """The student without credentials, as shown to staff and to the student."""
        data = self.to_dict()
        data.pop("passwordHash")
        if not include_username:
            data.pop("username")
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Student":
        loans = []
        for item in data.get("borrowedBooks") or []:
            if isinstance(item, dict) and item.get("bookId"):
                loans.append(LoanRecord(book_id=item["bookId"], borrowed_at=item.get("borrowedAt") or ""))
        return Student(
            id=data["id"],
            name=data.get("name") or "",
            username=(data.get("username") or "").strip(),
            password_hash=data.get("passwordHash") or "",
            grade=data.get("grade") or "",
            must_change_password=parse_boolean_flag(data.get("mustChangePassword")),
            class_ids=_id_list(data.get("classIds")),
            borrowed_books=loans,
        )


@dataclass
class StaffAccount:
    id: str
    name: str
    username: str
    role: str = TEACHER
    password_hash: str = ""
    must_change_password: bool = False
    class_ids: List[str] = field(default_factory=list)

    @property
    def is_teacher(self) -> bool:
        return self.role == TEACHER

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "passwordHash": self.password_hash,
            "role": self.role,
            "mustChangePassword": self.must_change_password,
        }
        if self.is_teacher:
            data["classIds"] = list(self.class_ids)
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("passwordHash")
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "StaffAccount":
        role = data.get("role") if data.get("role") in STAFF_ROLES else TEACHER
        return StaffAccount(
            id=data["id"],
            name=data.get("name") or "",
            username=(data.get("username") or "").strip(),
            role=role,
            password_hash=data.get("passwordHash") or "",
            must_change_password=parse_boolean_flag(data.get("mustChangePassword")),
            class_ids=_id_list(data.get("classIds")) if role == TEACHER else [],
        )


@dataclass
class SchoolClass:
    id: str
    name: str
    teacher_ids: List[str] = field(default_factory=list)
    student_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "teacherIds": list(self.teacher_ids),
            "studentIds": list(self.student_ids),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SchoolClass":
        return SchoolClass(
            id=data["id"],
            name=(data.get("name") or "").strip(),
            teacher_ids=_id_list(data.get("teacherIds")),
            student_ids=_id_list(data.get("studentIds")),
        )


@dataclass
class Folder:
    id: str
    name: str
    description: str = ""
    color: str = DEFAULT_FOLDER_COLOR
    exam_list: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "examList": self.exam_list,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Folder":
        return Folder(
            id=data["id"],
            name=data.get("name") or "",
            description=data.get("description") or "",
            color=data.get("color") or DEFAULT_FOLDER_COLOR,
            exam_list=parse_boolean_flag(data.get("examList")),
        )


@dataclass
class LibraryDocument:
    books: List[Book] = field(default_factory=list)
    students: List[Student] = field(default_factory=list)
    users: List[StaffAccount] = field(default_factory=list)
    classes: List[SchoolClass] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)

    # ------------------------- Books ------------------------- #
    def find_book(self, book_id: str) -> Optional[Book]:
        return next((book for book in self.books if book.id == book_id), None)

    def books_by_barcode(self, barcode: Any) -> List[Book]:
        normalized = normalize_barcode(barcode)
        if not normalized:
            return []
        return [book for book in self.books if book.barcode == normalized]

    def books_borrowed_by(self, student_id: str) -> List[Book]:
        return [book for book in self.books if book.borrowed_by == student_id]

    # ------------------------- People ------------------------- #
    def find_student(self, student_id: str) -> Optional[Student]:
        return next((student for student in self.students if student.id == student_id), None)

    def find_student_by_username(self, username: str) -> Optional[Student]:
        normalized = (username or "").strip().casefold()
        if not normalized:
            return None
        return next((s for s in self.students if s.username.casefold() == normalized), None)

    def find_staff(self, staff_id: str) -> Optional[StaffAccount]:
        return next((user for user in self.users if user.id == staff_id), None)

    def find_staff_by_username(self, username: str) -> Optional[StaffAccount]:
        normalized = (username or "").strip().casefold()
        if not normalized:
            return None
        return next((u for u in self.users if u.username.casefold() == normalized), None)

    def teachers(self) -> List[StaffAccount]:
        return [user for user in self.users if user.is_teacher]

    def is_username_taken(self, username: str, allow_id: Optional[str] = None) -> bool:
        """Usernames are unique across students and staff, case-insensitively."""
        normalized = (username or "").strip().casefold()
        for person in [*self.users, *self.students]:
            if person.id != allow_id and person.username.casefold() == normalized:
                return True
        return False

    # ------------------------- Classes & folders ------------------------- #
    def find_class(self, class_id: str) -> Optional[SchoolClass]:
        return next((klass for klass in self.classes if klass.id == class_id), None)

    def find_class_by_name(self, name: str) -> Optional[SchoolClass]:
        normalized = (name or "").strip().casefold()
        if not normalized:
            return None
        return next((klass for klass in self.classes if klass.name.casefold() == normalized), None)

    def class_names(self, class_ids: Iterable[str]) -> List[str]:
        names = []
        for class_id in class_ids:
            klass = self.find_class(class_id)
            if klass:
                names.append(klass.name)
        return names

    def find_folder(self, folder_id: str) -> Optional[Folder]:
        return next((folder for folder in self.folders if folder.id == folder_id), None)

    def find_folder_by_name(self, name: str) -> Optional[Folder]:
        normalized = (name or "").strip().casefold()
        if not normalized:
            return None
        return next((f for f in self.folders if f.name.casefold() == normalized), None)

    # ------------------------- Serialization ------------------------- #
    def to_dict(self) -> Dict[str, Any]:
        return {
            "books": [book.to_dict() for book in self.books],
            "students": [student.to_dict() for student in self.students],
            "users": [user.to_dict() for user in self.users],
            "classes": [klass.to_dict() for klass in self.classes],
            "folders": [folder.to_dict() for folder in self.folders],
            "history": [dict(entry) for entry in self.history],
        }

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "LibraryDocument":
        data = data or {}

        def _records(key: str) -> List[Dict[str, Any]]:
            value = data.get(key)
            if not isinstance(value, list):
                return []
            return [item for item in value if isinstance(item, dict) and item.get("id")]

        return LibraryDocument(
            books=[Book.from_dict(item) for item in _records("books")],
            students=[Student.from_dict(item) for item in _records("students")],
            users=[StaffAccount.from_dict(item) for item in _records("users")],
            classes=[SchoolClass.from_dict(item) for item in _records("classes")],
            folders=[Folder.from_dict(item) for item in _records("folders")],
            history=[dict(item) for item in _records("history")],
        )
