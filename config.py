import os
from pathlib import Path
from dotenv import load_dotenv
from typing import Optional

# Load .env from the project root first, then CWD; real env vars always win
_ROOT = Path(__file__).resolve().parent
_candidates = [
    _ROOT / ".env",
    Path.cwd() / ".env",
]
for p in _candidates:
    if p.exists():
        load_dotenv(p, override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


_DATA_DIR_ENV = os.getenv("MEMORY_DATA_DIR")
if _DATA_DIR_ENV:
    _DATA_DIR = Path(_DATA_DIR_ENV).expanduser()
else:
    _DATA_DIR = Path("./data")

_DATABASE_URL_ENV = os.getenv("MEMORY_DATABASE_URL") or os.getenv("DATABASE_URL")
if not _DATABASE_URL_ENV:
    _DATABASE_URL_ENV = f"sqlite:///{_DATA_DIR / 'memory.db'}"

_CHROMA_DB_PATH_ENV = os.getenv("CHROMA_DB_PATH") or str(_DATA_DIR / "chroma_db")


class Settings:
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    DATA_DIR: str = str(_DATA_DIR)

    # Database
    DATABASE_URL: str = _DATABASE_URL_ENV
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "20"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "40"))
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "10"))
    DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # ChromaDB / vector index
    CHROMA_DB_PATH: str = _CHROMA_DB_PATH_ENV
    CHROMA_HOST: Optional[str] = os.getenv("CHROMA_HOST")
    CHROMA_PORT: int = int(os.getenv("CHROMA_PORT", "8000"))
    VECTOR_TIMEOUT: float = float(os.getenv("VECTOR_TIMEOUT", "10"))
    VECTOR_SEARCH_SCORE_THRESHOLD: float = float(os.getenv("VECTOR_SEARCH_SCORE_THRESHOLD", "0.0"))

    # Embeddings
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    EMBEDDING_PROVIDER: str = os.getenv("EMBEDDING_PROVIDER", "openai")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSIONS: int = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
    EMBEDDING_BATCH_SIZE: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "10"))
    EMBEDDING_ALLOW_MOCK: bool = _env_bool("EMBEDDING_ALLOW_MOCK", "false")
    EMBEDDING_TIMEOUT: float = float(os.getenv("EMBEDDING_TIMEOUT", "30"))
    EMBEDDING_CACHE_TTL: int = int(os.getenv("EMBEDDING_CACHE_TTL", "86400"))  # 24h
    EMBEDDING_CACHE_MAX: int = int(os.getenv("EMBEDDING_CACHE_MAX", "1000"))
    AUTO_EMBED_ENABLED: bool = _env_bool("AUTO_EMBED_ENABLED", "true")

    # Upstream retries (embedding function + vector store)
    UPSTREAM_RETRY_ATTEMPTS: int = int(os.getenv("UPSTREAM_RETRY_ATTEMPTS", "3"))
    UPSTREAM_RETRY_DELAY: float = float(os.getenv("UPSTREAM_RETRY_DELAY", "1.0"))
    UPSTREAM_RETRY_MAX_DELAY: float = float(os.getenv("UPSTREAM_RETRY_MAX_DELAY", "5.0"))

    # Tenancy
    TENANT_HEADER: str = os.getenv("TENANT_HEADER", "X-Tenant-ID")

    CORS_ORIGINS: list = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]


settings = Settings()
