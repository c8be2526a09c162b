"""Credentials, authenticated identities and session tokens.

Passwords are hashed with SHA-256 and compared as hex digests. Sessions are
kept in a process-scoped ``SessionRegistry``; tokens are random UUIDs that
expire after ``settings.session_ttl_hours``.
"""

from __future__ import annotations

import hashlib
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from boekenbaai.models import ADMIN, TEACHER, LibraryDocument, StaffAccount, Student, new_id

STUDENT = "student"

_PASSWORD_ALPHABET = string.ascii_lowercase + string.digits


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_password(password: str, password_hash: str) -> bool:
    return bool(password_hash) and secrets.compare_digest(hash_password(password), password_hash)


def generate_password(length: int = 10) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


# ------------------------- Identities ------------------------- #
@dataclass(frozen=True)
class Identity:
    """Someone who is logged in. Use the concrete subclasses."""

    id: str
    name: str
    username: str = ""
    class_ids: Tuple[str, ...] = field(default_factory=tuple)

    role = ""

    @property
    def is_staff(self) -> bool:
        return self.role in (TEACHER, ADMIN)

    def has_role(self, *roles: str) -> bool:
        return not roles or self.role in roles

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "role": self.role, "username": self.username}


@dataclass(frozen=True)
class StudentIdentity(Identity):
    grade: str = ""

    role = STUDENT

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["grade"] = self.grade
        data["classIds"] = list(self.class_ids)
        return data


@dataclass(frozen=True)
class TeacherIdentity(Identity):
    role = TEACHER


@dataclass(frozen=True)
class AdminIdentity(Identity):
    role = ADMIN


def identity_for(person) -> Identity:
    if isinstance(person, Student):
        return StudentIdentity(
            id=person.id,
            name=person.name,
            username=person.username,
            class_ids=tuple(person.class_ids),
            grade=person.grade,
        )
    if isinstance(person, StaffAccount):
        cls = AdminIdentity if person.role == ADMIN else TeacherIdentity
        return cls(id=person.id, name=person.name, username=person.username, class_ids=tuple(person.class_ids))
    raise TypeError(f"Cannot build an identity for {type(person).__name__}")


def authenticate(document: LibraryDocument, username: str, password: str) -> Optional[Identity]:
    """Staff accounts are checked before students, matching usernames case-insensitively."""
    if not username or not password:
        return None
    for person in (document.find_staff_by_username(username), document.find_student_by_username(username)):
        if person and verify_password(password, person.password_hash):
            return identity_for(person)
    return None


def resolve_identity(document: LibraryDocument, person_id: str) -> Optional[Identity]:
    person = document.find_staff(person_id) or document.find_student(person_id)
    return identity_for(person) if person else None


# ------------------------- Sessions ------------------------- #
@dataclass
class Session:
    token: str
    person_id: str
    created_at: float
    expires_at: float


class SessionRegistry:
    """In-memory bearer tokens; cleared on logout, expiry or password reset."""

    def __init__(self, ttl_seconds: float = 24 * 60 * 60, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, person_id: str) -> Session:
        now = self._clock()
        session = Session(token=new_id(), person_id=person_id, created_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            self._sessions[session.token] = session
        return session

    def get(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        with self._lock:
            session = self._sessions.get(token)
            if session and session.expires_at < self._clock():
                del self._sessions[token]
                return None
            return session

    def revoke(self, token: Optional[str]) -> bool:
        with self._lock:
            return self._sessions.pop(token or "", None) is not None

    def revoke_person(self, person_id: str) -> int:
        """Drop every session of one person; returns how many were removed."""
        with self._lock:
            tokens: List[str] = [t for t, s in self._sessions.items() if s.person_id == person_id]
            for token in tokens:
                del self._sessions[token]
            return len(tokens)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


# ------------------------- Login throttling ------------------------- #
class LoginAttemptRegistry:
    """Sliding-window count of login attempts per client address."""

    def __init__(self, max_attempts: int = 10, window_seconds: float = 15 * 60,
                 clock: Callable[[], float] = time.time):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def _recent(self, key: str, now: float) -> List[float]:
        cutoff = now - self.window_seconds
        recent = [stamp for stamp in self._attempts.get(key, []) if stamp > cutoff]
        if recent:
            self._attempts[key] = recent
        else:
            self._attempts.pop(key, None)
        return recent

    def hit(self, key: str) -> bool:
        """Count one attempt for ``key``; False once the window is full."""
        with self._lock:
            now = self._clock()
            recent = self._recent(key, now)
            if len(recent) >= self.max_attempts:
                return False
            self._attempts[key] = recent + [now]
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest attempt in the window expires."""
        with self._lock:
            now = self._clock()
            recent = self._recent(key, now)
            if len(recent) < self.max_attempts:
                return 0
            return max(1, int(recent[0] + self.window_seconds - now) + 1)

    def clear(self) -> None:
        with self._lock:
            self._attempts.clear()
