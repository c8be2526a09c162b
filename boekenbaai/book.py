from __future__ import annotations

from typing import Any

from boekenbaai.normalize import (
    normalize_barcode,
    normalize_page_count_value,
    normalize_published_year,
    parse_boolean_flag,
    parse_multi_value_field,
)

AVAILABLE = "available"
BORROWED = "borrowed"

DEFAULT_COVER_COLOR = "#f9f9f9"

# Fields that ISBN metadata may fill in when they are still empty
BIBLIOGRAPHIC_FIELDS = ("description", "publisher", "published_year", "page_count", "language", "cover_url", "tags")


class Book:
    """A single physical copy in the library. Copies of one title share a barcode."""

    def __init__(self, id: str, title: str, author: str, barcode: str, description: str = "",
                 folder_id: str | None = None, status: str = AVAILABLE, borrowed_by: str | None = None,
                 due_date: str | None = None, tags: list | None = None,
                 # bibliographic fields
                 publisher: str = "", published_year: int | None = None, page_count: int | None = None,
                 language: str = "", cover_url: str = "", cover_color: str = DEFAULT_COVER_COLOR,
                 suitable_for_exam_list: bool = False, metadata_isbn: str = "",
                 created_at: str | None = None) -> None:
        self.id = id
        self.title = (title or "").strip()
        self.author = (author or "").strip()
        self.barcode = normalize_barcode(barcode)
        self.description = description or ""
        self.folder_id = folder_id or None
        self.status = status if status in (AVAILABLE, BORROWED) else AVAILABLE
        self.borrowed_by = borrowed_by
        self.due_date = due_date
        self.tags = list(tags or [])

        self.publisher = publisher or ""
        self.published_year = published_year
        self.page_count = page_count
        self.language = language or ""
        self.cover_url = cover_url or ""
        self.cover_color = cover_color or DEFAULT_COVER_COLOR
        self.suitable_for_exam_list = bool(suitable_for_exam_list)
        self.metadata_isbn = metadata_isbn or ""
        self.created_at = created_at

        # Repair records written by older versions that left a half-cleared loan behind
        if self.status == AVAILABLE:
            self.borrowed_by = None
            self.due_date = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (barcode: {self.barcode})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r}, status={self.status!r})"

    @property
    def is_available(self) -> bool:
        return self.status == AVAILABLE

    def mark_borrowed(self, student_id: str, due_date: str | None = None) -> None:
        self.status = BORROWED
        self.borrowed_by = student_id
        self.due_date = due_date

    def mark_available(self) -> None:
        self.status = AVAILABLE
        self.borrowed_by = None
        self.due_date = None

    def group_key(self) -> tuple[str, str]:
        """Copies of one logical title share barcode and (case-insensitive) title."""
        return self.barcode, self.title.casefold()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "barcode": self.barcode,
            "description": self.description,
            "folderId": self.folder_id,
            "status": self.status,
            "borrowedBy": self.borrowed_by,
            "dueDate": self.due_date,
            "tags": list(self.tags),
            "publisher": self.publisher,
            "publishedYear": self.published_year,
            "pageCount": self.page_count,
            "language": self.language,
            "coverUrl": self.cover_url,
            "coverColor": self.cover_color,
            "suitableForExamList": self.suitable_for_exam_list,
            "metadataIsbn": self.metadata_isbn,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Book":
        return Book(
            id=data["id"],
            title=data.get("title", ""),
            author=data.get("author", ""),
            barcode=data.get("barcode", ""),
            description=data.get("description") or "",
            folder_id=data.get("folderId"),
            status=data.get("status", AVAILABLE),
            borrowed_by=data.get("borrowedBy"),
            due_date=data.get("dueDate"),
            tags=parse_multi_value_field(data.get("tags")),
            publisher=data.get("publisher") or "",
            published_year=normalize_published_year(data.get("publishedYear")),
            page_count=normalize_page_count_value(data.get("pageCount")),
            language=data.get("language") or "",
            cover_url=data.get("coverUrl") or "",
            cover_color=data.get("coverColor") or DEFAULT_COVER_COLOR,
            suitable_for_exam_list=parse_boolean_flag(data.get("suitableForExamList")),
            metadata_isbn=data.get("metadataIsbn") or "",
            created_at=data.get("createdAt"),
        )
