import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from boekenbaai.auth import STUDENT, Identity, LoginAttemptRegistry, SessionRegistry, authenticate, resolve_identity
from boekenbaai.config import settings
from boekenbaai.errors import (
    AmbiguousBarcodeError,
    ConflictError,
    ExternalServiceError,
    LibraryError,
    NotFoundError,
    PermissionDeniedError,
    SpreadsheetError,
    StateConflictError,
    ValidationError,
)
from boekenbaai.history import HistoryFilter, public_feed, query_history
from boekenbaai.importer import Importer
from boekenbaai.library import Library
from boekenbaai.models import ADMIN, TEACHER
from boekenbaai.services.http_client import cleanup_http_client
from boekenbaai.services.isbn_lookup import IsbnMetadataCache
from boekenbaai.spreadsheet import read_rows

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS = (
    (SpreadsheetError, 400),
    (ValidationError, 400),
    (ConflictError, 409),
    (StateConflictError, 409),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (ExternalServiceError, 503),
)

sessions = SessionRegistry(ttl_seconds=settings.session_ttl_hours * 60 * 60)
login_attempts = LoginAttemptRegistry(
    max_attempts=settings.login_max_attempts,
    window_seconds=settings.login_window_minutes * 60,
)
isbn_cache = IsbnMetadataCache.from_settings()


def get_library() -> Library:
    return Library(sessions=sessions)


def get_sessions() -> SessionRegistry:
    return sessions


def get_login_attempts() -> LoginAttemptRegistry:
    return login_attempts


def get_isbn_cache() -> IsbnMetadataCache:
    return isbn_cache


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} API starting, data file {settings.data_path}")
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    payload: Dict[str, Any] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, AmbiguousBarcodeError):
        payload["titles"] = exc.titles
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    library: Library = Depends(get_library),
    registry: SessionRegistry = Depends(get_sessions),
) -> Optional[Identity]:
    token = credentials.credentials if credentials else None
    session = registry.get(token)
    if session is None:
        return None
    identity = resolve_identity(library.snapshot(), session.person_id)
    if identity is None:
        registry.revoke(token)
    return identity


def current_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Log in first")
    return identity


def require_roles(*roles: str):
    """Dependency that admits only identities with one of ``roles``."""

    def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if not identity.has_role(*roles):
            raise HTTPException(status_code=403, detail="Not allowed for your role")
        return identity

    return dependency


require_staff = require_roles(TEACHER, ADMIN)
require_admin = require_roles(ADMIN)


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str


class LoanRequest(CamelModel):
    student_id: Optional[str] = None
    due_date: Optional[str] = None
    title: Optional[str] = None


class BookPayload(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    folder_id: Optional[str] = None
    tags: Optional[List[str]] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    page_count: Optional[int] = None
    language: Optional[str] = None
    cover_url: Optional[str] = None
    cover_color: Optional[str] = None
    suitable_for_exam_list: Optional[bool] = None


class BookCreateRequest(BookPayload):
    copies: int = Field(default=1, ge=1, le=100)


class ImportRequest(CamelModel):
    file: Optional[str] = Field(default=None, description="Base64 encoded xlsx or csv file")
    filename: Optional[str] = None
    rows: Optional[List[Dict[str, Any]]] = None
    enrich_isbn: Optional[bool] = None


class StudentCreateRequest(BaseModel):
    name: str
    username: str
    password: Optional[str] = None
    grade: str = ""


class ClassCreateRequest(CamelModel):
    name: str
    teacher_ids: List[str] = Field(default_factory=list)


class ClassUpdateRequest(CamelModel):
    name: Optional[str] = None
    teacher_ids: Optional[List[str]] = None


class ClassStudentRequest(CamelModel):
    student_id: str


class FolderCreateRequest(CamelModel):
    name: str
    description: str = ""
    color: Optional[str] = None
    exam_list: bool = False


# --- Helpers ---
def _acting_student_id(identity: Identity, body: Optional[LoanRequest]) -> str:
    """Students act for themselves; staff name the student."""
    if identity.role == STUDENT:
        return identity.id
    if not body or not body.student_id:
        raise ValidationError("Select a student first")
    return body.student_id


def _import_rows(body: ImportRequest) -> List[Dict[str, Any]]:
    if body.rows is not None:
        return body.rows
    if not body.file:
        raise ValidationError("No file received")
    return read_rows(body.file, body.filename)


def _ensure_class_access(identity: Identity, library: Library, class_id: str) -> None:
    if identity.role == ADMIN:
        return
    if not any(klass.id == class_id for klass in library.list_classes(teacher_id=identity.id)):
        if library.snapshot().find_class(class_id) is None:
            raise NotFoundError("Class not found")
        raise PermissionDeniedError("You can only manage your own classes")


# --- Sessions ---
@app.post("/api/login")
def login(body: LoginRequest, request: Request, library: Library = Depends(get_library),
          registry: SessionRegistry = Depends(get_sessions),
          attempts: LoginAttemptRegistry = Depends(get_login_attempts)):
    client = request.client.host if request.client else "unknown"
    if not attempts.hit(client):
        logger.warning(f"Too many login attempts from {client}")
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts, try again later",
            headers={"Retry-After": str(attempts.retry_after(client))},
        )
    document = library.snapshot()
    identity = authenticate(document, body.username, body.password)
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    person = document.find_staff(identity.id) or document.find_student(identity.id)
    session = registry.create(identity.id)
    logger.info(f"{identity.role} {identity.username} logged in")
    return {
        "token": session.token,
        "user": identity.to_dict(),
        "mustChangePassword": person.must_change_password,
    }


@app.post("/api/logout")
def logout(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
           registry: SessionRegistry = Depends(get_sessions)):
    registry.revoke(credentials.credentials if credentials else None)
    return {"ok": True}


@app.get("/api/me")
def me(identity: Identity = Depends(current_identity), library: Library = Depends(get_library)):
    if identity.role == STUDENT:
        student = library.snapshot().find_student(identity.id)
        return {**student.to_public_dict(include_username=True), "role": STUDENT}
    return identity.to_dict()


@app.post("/api/me/password")
def change_password(body: ChangePasswordRequest, identity: Identity = Depends(current_identity),
                    library: Library = Depends(get_library)):
    library.change_password(identity.id, body.current_password, body.new_password)
    return {"ok": True}


# --- Books ---
@app.get("/api/status")
def status(library: Library = Depends(get_library)):
    return library.status_summary()


@app.get("/api/books")
def list_books(folder: Optional[str] = None, query: Optional[str] = None,
               library: Library = Depends(get_library)):
    return [book.to_dict() for book in library.list_books(folder=folder, query=query)]


@app.get("/api/books/barcode/{barcode}")
def lookup_barcode(barcode: str, title: Optional[str] = None, library: Library = Depends(get_library)):
    return library.lookup_by_barcode(barcode, title=title).to_dict()


@app.get("/api/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library)):
    return library.get_book(book_id).to_dict()


@app.post("/api/books", status_code=201)
def create_book(body: BookCreateRequest, identity: Identity = Depends(require_admin),
                library: Library = Depends(get_library)):
    data = body.model_dump(by_alias=True, exclude_none=True, exclude={"copies"})
    books = library.create_book(data, copies=body.copies)
    return {"books": [book.to_dict() for book in books]}


@app.put("/api/books/{book_id}")
def update_book(book_id: str, body: BookPayload, identity: Identity = Depends(require_admin),
                library: Library = Depends(get_library)):
    return library.update_book(book_id, body.model_dump(by_alias=True, exclude_none=True)).to_dict()


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, identity: Identity = Depends(require_admin),
                library: Library = Depends(get_library)):
    book = library.delete_book(book_id)
    return {"deleted": book.id}


@app.post("/api/books/{book_id}/check-out")
def check_out(book_id: str, body: Optional[LoanRequest] = None, identity: Identity = Depends(current_identity),
              library: Library = Depends(get_library)):
    """``book_id`` may also be a scanned barcode; ``title`` then picks the title."""
    student_id = _acting_student_id(identity, body)
    due_date = body.due_date if body and identity.is_staff else None
    if library.snapshot().find_book(book_id):
        result = library.check_out(book_id, student_id, due_date=due_date)
    else:
        result = library.check_out_by_barcode(book_id, student_id, title=body.title if body else None,
                                              due_date=due_date)
    return result.to_dict()


@app.post("/api/books/{book_id}/check-in")
def check_in(book_id: str, body: Optional[LoanRequest] = None, identity: Identity = Depends(current_identity),
             library: Library = Depends(get_library)):
    student_id = _acting_student_id(identity, body)
    if library.snapshot().find_book(book_id):
        result = library.check_in(book_id, student_id)
    else:
        result = library.check_in_by_barcode(book_id, student_id, title=body.title if body else None)
    return result.to_dict()


@app.get("/api/isbn/{isbn}")
async def isbn_lookup(isbn: str, identity: Identity = Depends(require_staff),
                      cache: IsbnMetadataCache = Depends(get_isbn_cache)):
    return await cache.lookup(isbn)


@app.get("/api/isbn-cache/stats")
def isbn_cache_stats(identity: Identity = Depends(require_admin), cache: IsbnMetadataCache = Depends(get_isbn_cache)):
    return cache.stats()


@app.get("/api/folders")
def list_folders(library: Library = Depends(get_library)):
    return [folder.to_dict() for folder in library.snapshot().folders]


@app.post("/api/folders", status_code=201)
def create_folder(body: FolderCreateRequest, identity: Identity = Depends(require_admin),
                  library: Library = Depends(get_library)):
    folder = library.create_folder(body.name, body.description, body.color, body.exam_list)
    return folder.to_dict()


# --- Imports ---
@app.post("/api/books/import")
async def import_books(body: ImportRequest, identity: Identity = Depends(require_admin),
                       library: Library = Depends(get_library),
                       cache: IsbnMetadataCache = Depends(get_isbn_cache)):
    importer = Importer(library, isbn_cache=cache)
    rows = await run_in_threadpool(_import_rows, body)
    report = await importer.import_books(rows, enrich_isbn=body.enrich_isbn)
    return report.to_dict()


@app.post("/api/students/import")
def import_students(body: ImportRequest, identity: Identity = Depends(require_admin),
                    library: Library = Depends(get_library)):
    return Importer(library).import_students(_import_rows(body)).to_dict()


@app.post("/api/teachers/import")
def import_teachers(body: ImportRequest, identity: Identity = Depends(require_admin),
                    library: Library = Depends(get_library)):
    return Importer(library).import_teachers(_import_rows(body)).to_dict()


# --- People ---
@app.get("/api/students")
def list_students(identity: Identity = Depends(require_staff), library: Library = Depends(get_library)):
    return [student.to_public_dict(include_username=True) for student in library.snapshot().students]


@app.post("/api/students", status_code=201)
def create_student(body: StudentCreateRequest, identity: Identity = Depends(require_admin),
                   library: Library = Depends(get_library)):
    student, password = library.create_student(body.name, body.username, body.password, body.grade)
    return {**student.to_public_dict(include_username=True), "temporaryPassword": password}


@app.delete("/api/students/{student_id}")
def delete_student(student_id: str, identity: Identity = Depends(require_admin),
                   library: Library = Depends(get_library)):
    return {"deleted": library.delete_student(student_id).id}


@app.post("/api/accounts/{person_id}/reset-password")
def reset_password(person_id: str, identity: Identity = Depends(require_admin),
                   library: Library = Depends(get_library)):
    return {"id": person_id, "password": library.reset_password(person_id)}


# --- History ---
@app.get("/api/history")
def history(limit: int = Query(20, ge=1, le=200), identity: Identity = Depends(current_identity),
            library: Library = Depends(get_library)):
    if identity.role == ADMIN:
        history_filter = HistoryFilter(limit=limit)
    elif identity.role == TEACHER:
        history_filter = HistoryFilter(teacher_id=identity.id, limit=limit)
    else:
        history_filter = HistoryFilter(student_id=identity.id, limit=limit)
    return query_history(library.snapshot(), history_filter)


@app.get("/api/history/public")
def history_public(limit: int = Query(10, ge=1, le=50), library: Library = Depends(get_library)):
    return public_feed(library.snapshot(), limit=limit)


# --- Classes ---
@app.get("/api/classes")
def list_classes(identity: Identity = Depends(require_staff), library: Library = Depends(get_library)):
    teacher_id = identity.id if identity.role == TEACHER else None
    return [klass.to_dict() for klass in library.list_classes(teacher_id=teacher_id)]


@app.post("/api/classes", status_code=201)
def create_class(body: ClassCreateRequest, identity: Identity = Depends(require_staff),
                 library: Library = Depends(get_library)):
    teacher_ids = body.teacher_ids if identity.role == ADMIN else [identity.id]
    return library.create_class(body.name, teacher_ids).to_dict()


@app.patch("/api/classes/{class_id}")
def update_class(class_id: str, body: ClassUpdateRequest, identity: Identity = Depends(require_staff),
                 library: Library = Depends(get_library)):
    _ensure_class_access(identity, library, class_id)
    klass = None
    if body.name is not None:
        klass = library.rename_class(class_id, body.name)
    if body.teacher_ids is not None and identity.role == ADMIN:
        klass = library.set_class_teachers(class_id, body.teacher_ids)
    if klass is None:
        klass = library.snapshot().find_class(class_id)
    return klass.to_dict()


@app.delete("/api/classes/{class_id}")
def delete_class(class_id: str, identity: Identity = Depends(require_admin),
                 library: Library = Depends(get_library)):
    return {"deleted": library.delete_class(class_id).id}


@app.post("/api/classes/{class_id}/students")
def add_class_student(class_id: str, body: ClassStudentRequest, identity: Identity = Depends(require_staff),
                      library: Library = Depends(get_library)):
    _ensure_class_access(identity, library, class_id)
    klass, student = library.add_student_to_class(class_id, body.student_id)
    return {"class": klass.to_dict(), "student": student.to_public_dict(include_username=True)}


@app.delete("/api/classes/{class_id}/students/{student_id}")
def remove_class_student(class_id: str, student_id: str, identity: Identity = Depends(require_staff),
                         library: Library = Depends(get_library)):
    _ensure_class_access(identity, library, class_id)
    klass, student = library.remove_student_from_class(class_id, student_id)
    return {"class": klass.to_dict(), "student": student.to_public_dict(include_username=True)}
