"""Bounded, newest-first activity log stored in the library document."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from boekenbaai.models import LibraryDocument, new_id

HISTORY_LIMIT = 200
DEFAULT_QUERY_LIMIT = 20

CHECK_OUT = "check_out"
CHECK_IN = "check_in"
LOAN_EVENTS = (CHECK_OUT, CHECK_IN)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def append_history(document: LibraryDocument, entry: Dict[str, Any], timestamp: Optional[str] = None) -> Dict[str, Any]:
    """Prepend ``entry`` with a fresh id and timestamp; keep the newest 200 entries."""
    record = {key: value for key, value in entry.items() if value is not None}
    record["id"] = new_id()
    record["timestamp"] = timestamp or utc_now_iso()
    document.history.insert(0, record)
    del document.history[HISTORY_LIMIT:]
    return record


@dataclass
class HistoryFilter:
    """Which entries a caller may see.

    ``student_id`` limits to one student's events; ``teacher_id`` limits to
    events of students in the teacher's classes. Neither means everything.
    """

    student_id: Optional[str] = None
    teacher_id: Optional[str] = None
    types: Optional[Set[str]] = None
    limit: Optional[int] = DEFAULT_QUERY_LIMIT


def teacher_class_ids(document: LibraryDocument, teacher_id: str) -> Set[str]:
    class_ids = {klass.id for klass in document.classes if teacher_id in klass.teacher_ids}
    teacher = document.find_staff(teacher_id)
    if teacher:
        class_ids.update(class_id for class_id in teacher.class_ids if document.find_class(class_id))
    return class_ids


def teacher_student_ids(document: LibraryDocument, teacher_id: str) -> Set[str]:
    class_ids = teacher_class_ids(document, teacher_id)
    student_ids: Set[str] = set()
    for klass in document.classes:
        if klass.id in class_ids:
            student_ids.update(klass.student_ids)
    for student in document.students:
        if class_ids.intersection(student.class_ids):
            student_ids.add(student.id)
    return student_ids


def query_history(document: LibraryDocument, history_filter: Optional[HistoryFilter] = None) -> List[Dict[str, Any]]:
    history_filter = history_filter or HistoryFilter()
    entries = list(document.history)

    if history_filter.student_id:
        entries = [e for e in entries if e.get("studentId") == history_filter.student_id]

    if history_filter.teacher_id:
        class_ids = teacher_class_ids(document, history_filter.teacher_id)
        student_ids = teacher_student_ids(document, history_filter.teacher_id)
        entries = [
            e for e in entries
            if e.get("studentId") in student_ids or (e.get("classId") and e.get("classId") in class_ids)
        ]

    if history_filter.types:
        entries = [e for e in entries if e.get("type") in history_filter.types]

    # Stored newest first, but hand-edited files may not be
    entries.sort(key=lambda e: e.get("timestamp") or "", reverse=True)

    if history_filter.limit is not None and history_filter.limit >= 0:
        entries = entries[:history_filter.limit]
    return [dict(e) for e in entries]


def public_feed(document: LibraryDocument, limit: int = DEFAULT_QUERY_LIMIT) -> List[Dict[str, Any]]:
    """Anonymous loan activity: book title and time only."""
    feed = []
    for entry in query_history(document, HistoryFilter(types=set(LOAN_EVENTS), limit=None)):
        book = document.find_book(entry.get("bookId") or "")
        if not book:
            continue
        feed.append({"title": book.title, "timestamp": entry.get("timestamp")})
        if len(feed) >= limit:
            break
    return feed
