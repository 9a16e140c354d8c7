import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        upload_dir: Path,
        max_upload_bytes: int = 10 * 1024 * 1024,
        cors_origins: tuple[str, ...] = ("*",),
        log_level: str = "INFO",
        host: str = "0.0.0.0",
        port: int = 3000,
    ) -> None:
        self.database_url = database_url
        self.upload_dir = upload_dir
        self.max_upload_bytes = max_upload_bytes
        self.cors_origins = cors_origins
        self.log_level = log_level
        self.host = host
        self.port = port


def _ensure_dir(path: Path) -> Path:
    root = path.resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_dir(Path(os.getenv("FINANCES_DATA_DIR", "./data")))
    default_db = data_dir / "finances.db"
    database_url = os.getenv("FINANCES_DATABASE_URL", f"sqlite:///{default_db}")
    upload_dir = _ensure_dir(
        Path(os.getenv("FINANCES_UPLOAD_DIR", str(data_dir / "uploads")))
    )
    max_upload_bytes = int(os.getenv("FINANCES_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    cors_origins = tuple(
        origin.strip()
        for origin in os.getenv("FINANCES_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    )
    log_level = os.getenv("FINANCES_LOG_LEVEL", "INFO").upper()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    return Settings(
        database_url=database_url,
        upload_dir=upload_dir,
        max_upload_bytes=max_upload_bytes,
        cors_origins=cors_origins,
        log_level=log_level,
        host=host,
        port=port,
    )
