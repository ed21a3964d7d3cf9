import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./stockledger.db")
    database_echo: bool = os.getenv("DATABASE_ECHO", "False").lower() == "true"

    # Upper bound for waiting on a row (or SQLite database) lock inside one unit of work.
    lock_timeout_ms: int = int(os.getenv("LOCK_TIMEOUT_MS", "5000"))

    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "stockledger-dev-secret")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: list[str] = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if origin.strip()
    ]

    # Page size ceiling for movement history listings.
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "500"))


settings = Settings()
