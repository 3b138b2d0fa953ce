from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader
from langchain_core.documents import Document

from rag_agent.exception.custom_exception import UnsupportedFormatError
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.utils.file_io import DOCX_CONTENT_TYPE, PDF_CONTENT_TYPE
from rag_agent.utils.thread_pool import run_sync

PAGE_SEPARATOR = "\n\n"


@dataclass
class ExtractedText:
    text: str
    page_count: Optional[int] = None
    # start offset of every page inside `text`; empty for formats without pages
    page_offsets: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "page_count": self.page_count,
            "page_offsets": self.page_offsets,
        }


def _load_pdf(path: Path) -> List[Document]:
    # one Document per page
    return PyPDFLoader(str(path)).load()


def _load_docx(path: Path) -> List[Document]:
    return Docx2txtLoader(str(path)).load()


LOADERS: dict[str, tuple[str, Callable[[Path], List[Document]]]] = {
    PDF_CONTENT_TYPE: (".pdf", _load_pdf),
    DOCX_CONTENT_TYPE: (".docx", _load_docx),
}


def _load_from_bytes(data: bytes, suffix: str, loader: Callable[[Path], List[Document]]):
    # LangChain loaders read from disk, the buffer lives only for this call
    with tempfile.TemporaryDirectory(prefix="rag_extract_") as tmp:
        path = Path(tmp) / f"upload{suffix}"
        path.write_bytes(data)
        return loader(path)


async def extract_text(data: bytes, content_type: str, filename: str = "") -> ExtractedText:
    """
    Dispatch to the loader registered for `content_type` and join the page texts.
    Raises UnsupportedFormatError for anything without a loader.
    """
    if content_type not in LOADERS:
        raise UnsupportedFormatError(f"Unsupported file type: {content_type}")

    suffix, loader = LOADERS[content_type]
    docs = await run_sync(_load_from_bytes, data, suffix, loader)

    if content_type != PDF_CONTENT_TYPE:
        text = PAGE_SEPARATOR.join(d.page_content for d in docs)
        log.info("Extracted text | filename=%s | chars=%d", filename, len(text))
        return ExtractedText(text=text)

    offsets = []
    parts = []
    cursor = 0
    for doc in docs:
        offsets.append(cursor)
        parts.append(doc.page_content)
        cursor += len(doc.page_content) + len(PAGE_SEPARATOR)

    text = PAGE_SEPARATOR.join(parts)
    log.info(
        "Extracted PDF text | filename=%s | pages=%d | chars=%d",
        filename,
        len(docs),
        len(text),
    )
    return ExtractedText(text=text, page_count=len(docs), page_offsets=offsets)
