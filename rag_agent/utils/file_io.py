from __future__ import annotations

import re
from pathlib import Path

from rag_agent.exception.custom_exception import UploadValidationError
from rag_agent.logger import GLOBAL_LOGGER as log

PDF_CONTENT_TYPE = "application/pdf"
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

ALLOWED_CONTENT_TYPES = {PDF_CONTENT_TYPE, DOCX_CONTENT_TYPE}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def validate_upload(
    filename: str | None,
    content_type: str | None,
    size: int,
    allowed_content_types: set[str] | None = None,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> None:
    """Raise UploadValidationError for anything that must be rejected before storage."""
    allowed = allowed_content_types or ALLOWED_CONTENT_TYPES

    if not filename:
        raise UploadValidationError("No file provided")

    if content_type not in allowed:
        log.warning(
            "Rejected upload type | filename=%s | content_type=%s", filename, content_type
        )
        raise UploadValidationError("Invalid file type. Only PDF and DOCX files are supported.")

    if size > max_bytes:
        log.warning("Rejected oversize upload | filename=%s | size=%d", filename, size)
        raise UploadValidationError(
            f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB."
        )


def safe_filename(name: str) -> str:
    """Clean file name for use in a storage key (only alphanum, dash, underscore)."""
    path = Path(name)
    stem = re.sub(r"[^a-zA-Z0-9_\-]", "_", path.stem) or "file"
    extension = re.sub(r"[^a-zA-Z0-9.]", "", path.suffix.lower())
    return f"{stem}{extension}"
