import secrets
import string
import time
import uuid
from datetime import datetime

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    """Generate a unique session ID with timestamp."""
    now = datetime.now()

    day = now.strftime("%d")  # 18
    month = now.strftime("%b").lower()  # nov
    year = now.strftime("%Y")  # 2025
    time_part = now.strftime("%I:%M_%p")  # 03:13_PM

    # Clean time format (remove leading 0, lowercase am/pm)
    time_part = time_part.lstrip("0").lower()

    unique_id = uuid.uuid4().hex[:4]
    return f"session_{day}_{month}_{year}_{time_part}_{unique_id}"


def generate_document_id() -> str:
    """doc-{epoch millis}-{9 random base36 chars}"""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"doc-{int(time.time() * 1000)}-{suffix}"


def blob_key_for(session_id: str, document_id: str, filename: str) -> str:
    return f"documents/{session_id}/{document_id}/{filename}"
