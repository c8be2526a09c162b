"""Whole-document JSON persistence for the library.

The application keeps all of its data in one JSON file. ``load`` reads the
whole document, ``save`` replaces it atomically (temp file + ``os.replace``).
``transaction`` wraps load -> mutate -> save in a per-file lock so two
mutations can never interleave on the same snapshot.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from boekenbaai.config import settings
from boekenbaai.errors import ExternalServiceError
from boekenbaai.models import LibraryDocument

logger = logging.getLogger(__name__)

# One writer lock per resolved document path, shared by every store instance
_locks: Dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


class DocumentStoreError(ExternalServiceError):
    """The persisted document exists but cannot be read or written."""


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.RLock()
        return lock


class JsonDocumentStore:
    """Load and save the library document as a single JSON file."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path or settings.data_path)
        self._lock = _lock_for(self.path)

    def load_raw(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            # Refuse to continue: saving over a corrupt file would lose all data
            raise DocumentStoreError(f"Data file {self.path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise DocumentStoreError(f"Data file {self.path} cannot be read: {exc}") from exc
        return data if isinstance(data, dict) else {}

    def load(self) -> LibraryDocument:
        return LibraryDocument.from_dict(self.load_raw())

    def save(self, document: LibraryDocument) -> None:
        """Write the document atomically."""
        self.save_raw(document.to_dict())

    def save_raw(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise DocumentStoreError(f"Data file {self.path} cannot be written: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[LibraryDocument]:
        """Yield the current document under the writer lock and save it on success.

        If the block raises, nothing is written and the exception propagates.
        A block that leaves the document unchanged does not write either.
        """
        with self._lock:
            document = self.load()
            baseline = document.to_dict()
            yield document
            updated = document.to_dict()
            if updated != baseline:
                self.save_raw(updated)
                logger.debug(f"Saved library document to {self.path}")
