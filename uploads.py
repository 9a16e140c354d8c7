import logging
import os
import re
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from services import UploadRejected


logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _safe_name(filename: Optional[str]) -> str:
    base = Path(filename or "upload.xlsx").name
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned[:100] or "upload.xlsx"


def validate_upload(
    filename: Optional[str],
    content_type: Optional[str],
    size: int,
    max_bytes: int,
) -> None:
    is_xlsx = content_type == XLSX_MEDIA_TYPE or (
        filename is not None and filename.lower().endswith(".xlsx")
    )
    if not is_xlsx:
        raise UploadRejected("Only .xlsx files are allowed")
    if size == 0:
        raise UploadRejected("Empty file")
    if size > max_bytes:
        raise UploadRejected(f"File too large. Maximum size is {_format_size(max_bytes)}")


def _format_size(size: int) -> str:
    for unit, factor in (("MB", 1024 * 1024), ("KB", 1024)):
        if size >= factor and size % factor == 0:
            return f"{size // factor}{unit}"
    return f"{size} bytes"


@contextmanager
def stored_upload(
    content: bytes, filename: Optional[str], upload_dir: Path
) -> Iterator[Path]:
    """Write an upload to disk for the duration of the block, then remove it."""
    upload_dir.mkdir(parents=True, exist_ok=True)
    token = os.urandom(8).hex()
    path = upload_dir / f"{int(time.time() * 1000)}-{token}-{_safe_name(filename)}"
    try:
        path.write_bytes(content)
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"upload_cleanup_failed: path={path} error={exc}")
