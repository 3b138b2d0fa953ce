from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from rag_agent.exception.custom_exception import SegmenterConfigError
from rag_agent.logger import GLOBAL_LOGGER as log

DEFAULT_SEPARATORS = ["\n\n", "\n", " ", ""]


@dataclass(frozen=True)
class SegmenterConfig:
    chunk_size: int = 1000
    chunk_overlap: int = 200
    separators: List[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise SegmenterConfigError("chunk_size must be greater than 0")
        if self.chunk_overlap < 0:
            raise SegmenterConfigError("chunk_overlap must be non-negative")
        if self.chunk_overlap >= self.chunk_size:
            raise SegmenterConfigError("chunk_overlap must be less than chunk_size")

        if self.chunk_size < 100:
            log.warning("chunk_size is very small | chunk_size=%d", self.chunk_size)
        elif self.chunk_size > 5000:
            log.warning("chunk_size is very large | chunk_size=%d", self.chunk_size)

    @classmethod
    def from_config(cls, config: dict) -> "SegmenterConfig":
        section = config.get("segmenter", {})
        return cls(
            chunk_size=section.get("chunk_size", 1000),
            chunk_overlap=section.get("chunk_overlap", 200),
            separators=section.get("separators", list(DEFAULT_SEPARATORS)),
        )


@dataclass
class Segment:
    text: str
    ordinal: int
    start_index: int = 0
    page_number: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class Segmenter:
    """
    Splits extracted text into overlapping windows.

    Boundaries are searched in separator order (paragraph, line, space, raw
    character), so a window ends on the most meaningful break that keeps it
    within chunk_size. Overlap is an upper bound: it is assembled from whole
    pieces of the previous window.
    """

    def __init__(self, config: SegmenterConfig | None = None):
        self.config = config or SegmenterConfig()
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.config.chunk_size,
            chunk_overlap=self.config.chunk_overlap,
            separators=self.config.separators,
            add_start_index=True,
        )

    def split(self, text: str, page_offsets: Sequence[int] | None = None) -> List[Segment]:
        if not text or not text.strip():
            return []

        docs = self._splitter.create_documents([text])
        segments = []
        for ordinal, doc in enumerate(docs):
            start = doc.metadata.get("start_index", 0)
            segments.append(
                Segment(
                    text=doc.page_content,
                    ordinal=ordinal,
                    start_index=start,
                    page_number=self._page_for(start, page_offsets),
                )
            )

        log.info(
            "Text segmented | chars=%d | segments=%d | chunk_size=%d | overlap=%d",
            len(text),
            len(segments),
            self.config.chunk_size,
            self.config.chunk_overlap,
        )
        return segments

    @staticmethod
    def _page_for(start_index: int, page_offsets: Sequence[int] | None) -> Optional[int]:
        if not page_offsets:
            return None
        return max(1, bisect_right(page_offsets, start_index))

    def estimate_segment_count(self, text_length: int) -> int:
        if text_length <= 0:
            return 0
        stride = self.config.chunk_size - self.config.chunk_overlap
        return max(1, math.ceil((text_length - self.config.chunk_overlap) / stride))
