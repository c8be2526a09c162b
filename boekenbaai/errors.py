"""Error kinds raised by the lending and import core.

Every error carries a short ``code`` so the HTTP layer and the CLI can map it
without inspecting messages.
"""


class LibraryError(Exception):
    """Base class for recoverable library errors."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    """Malformed or missing input."""

    code = "invalid"


class AmbiguousBarcodeError(ValidationError):
    """A barcode maps to several titles and no title was given to choose one."""

    code = "ambiguous_barcode"

    def __init__(self, message: str, titles: list[str] | None = None) -> None:
        super().__init__(message)
        self.titles = titles or []


class ConflictError(LibraryError):
    """A uniqueness rule would be violated (barcode, username)."""

    code = "conflict"


class NotFoundError(LibraryError):
    code = "not_found"


class StateConflictError(LibraryError):
    """The requested transition is not allowed in the current state."""

    code = "state_conflict"


class PermissionDeniedError(LibraryError):
    code = "forbidden"


class ExternalServiceError(LibraryError):
    """An external collaborator (metadata source, spreadsheet reader) failed."""

    code = "external"


class SpreadsheetError(ExternalServiceError):
    code = "spreadsheet"
