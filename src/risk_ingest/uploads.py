# src/risk_ingest/uploads.py
import os
from uuid import uuid4

from fastapi import UploadFile

from .config import Settings
from .errors import IngestError
from .logger import get_logger
from .pipeline import remove_artifact

logger = get_logger(__name__)

ALLOWED_MIMES = {"text/csv", "application/vnd.ms-excel", "application/csv", "text/plain"}
ALLOWED_EXTS = {".csv"}
CHUNK = 64 * 1024


class UploadRejected(IngestError):
    """The upload is not something we will try to parse."""


def check_file_type(filename: str, content_type: str) -> None:
    ext = os.path.splitext(filename or "")[1].lower()
    if (content_type or "").split(";")[0].strip() in ALLOWED_MIMES or ext in ALLOWED_EXTS:
        return
    logger.warning("invalid file type attempted", extra={"upload": filename, "mimetype": content_type})
    raise UploadRejected("Only CSV files are allowed")


def check_content(path: str) -> None:
    """At least a header and one data row, and a header that looks delimited."""
    with open(path, encoding="utf-8-sig", errors="replace") as f:
        lines = []
        for line in f:
            if line.strip():
                lines.append(line)
            if len(lines) >= 2:
                break
    if len(lines) < 2:
        raise UploadRejected("CSV file must contain at least a header row and one data row")
    if "," not in lines[0] and ";" not in lines[0]:
        raise UploadRejected("File does not appear to be a valid CSV file")


async def save_upload(upload: UploadFile, settings: Settings) -> str:
    """Write the upload to a scratch file in UPLOAD_DIR and return its path."""
    check_file_type(upload.filename, upload.content_type)
    os.makedirs(settings.upload_dir, exist_ok=True)
    ext = os.path.splitext(upload.filename or "")[1].lower() or ".csv"
    path = os.path.join(settings.upload_dir, f"file-{uuid4().hex}{ext}")

    size = 0
    try:
        with open(path, "wb") as out:
            while True:
                chunk = await upload.read(CHUNK)
                if not chunk:
                    break
                size += len(chunk)
                if size > settings.max_file_size:
                    raise UploadRejected(f"File exceeds the {settings.max_file_size} byte limit")
                out.write(chunk)
        check_content(path)
    except Exception:
        remove_artifact(path)
        raise
    return path
