import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "y", "ja", "on")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "3000"))
    app_name: str = os.getenv("APP_NAME", "Boekenbaai")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Document store
    data_path: str = os.getenv(
        "BOEKENBAAI_DATA_PATH",
        os.path.join(os.getcwd(), "data", "db.json"),
    )

    # Sessions
    session_ttl_hours: int = int(os.getenv("SESSION_TTL_HOURS", "24"))
    login_max_attempts: int = int(os.getenv("LOGIN_MAX_ATTEMPTS", "10"))
    login_window_minutes: int = int(os.getenv("LOGIN_WINDOW_MINUTES", "15"))

    # ISBN metadata lookups
    isbn_cache_ttl: int = int(os.getenv("ISBN_CACHE_TTL", "300"))  # 5 minutes
    isbn_lookup_timeout: float = float(os.getenv("ISBN_LOOKUP_TIMEOUT", "10"))
    isbn_offline: bool = _env_flag("ISBN_OFFLINE", "False")
    enable_google_books: bool = _env_flag("ENABLE_GOOGLE_BOOKS", "True")
    enable_open_library: bool = _env_flag("ENABLE_OPEN_LIBRARY", "True")
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")

    # Import
    import_enrich_isbn: bool = _env_flag("BOEKENBAAI_IMPORT_ENRICH_ISBN", "False")
    generated_password_length: int = int(os.getenv("GENERATED_PASSWORD_LENGTH", "10"))


settings = Settings()
