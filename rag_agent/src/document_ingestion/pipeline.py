from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.document_repository import DocumentRepository
from db.ingestion_ledger import IngestionLedger
from db.models import Document
from rag_agent.exception.custom_exception import ConsistencyError, FatalPipelineError
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.document_ingestion.segmenter import Segmenter
from rag_agent.src.document_ingestion.vectorizer import Vectorizer
from rag_agent.src.document_store.consistency import ConsistencyLayer
from rag_agent.storage.blob_store import LocalBlobStore
from rag_agent.utils.document_ops import ExtractedText, extract_text

FETCH_AND_EXTRACT = "fetch_and_extract"
SEGMENT = "segment"
VECTORIZE = "vectorize"
PERSIST = "persist"
FINALIZE = "finalize"

STEPS = (FETCH_AND_EXTRACT, SEGMENT, VECTORIZE, PERSIST, FINALIZE)

Extractor = Callable[[bytes, str, str], Awaitable[ExtractedText]]
StepContext = Dict[str, Dict[str, Any]]


@dataclass(frozen=True)
class IngestionJob:
    document_id: str
    session_id: str
    filename: str
    storage_key: str
    content_type: str

    @classmethod
    def from_document(cls, doc: Document) -> "IngestionJob":
        return cls(
            document_id=doc.id,
            session_id=doc.session_id,
            filename=doc.filename,
            storage_key=doc.storage_key,
            content_type=doc.content_type or "",
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 10.0

    @classmethod
    def from_config(cls, config: dict) -> "RetryPolicy":
        section = config.get("ingestion", {})
        return cls(
            max_attempts=section.get("max_attempts", 3),
            backoff_base=section.get("backoff_base_seconds", 1.0),
            backoff_cap=section.get("backoff_cap_seconds", 10.0),
        )

    def delay(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        return min(self.backoff_cap, self.backoff_base * (2**attempt)) * (0.5 + random.random() / 2)


class IngestionStateMachine:
    """
    Drives one document from pending to ready or error.

    fetch_and_extract -> segment -> vectorize -> persist -> finalize

    Each finished step is written to the ingestion ledger together with its
    output. A rerun (retry, restart, duplicate schedule) loads the ledger and
    continues at the first step without a record. Failures other than
    FatalPipelineError are retried inside the step; once a step gives up the
    document is marked error and nothing after it runs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: LocalBlobStore,
        segmenter: Segmenter,
        vectorizer: Vectorizer,
        consistency: ConsistencyLayer,
        retry_policy: Optional[RetryPolicy] = None,
        extractor: Extractor = extract_text,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.segmenter = segmenter
        self.vectorizer = vectorizer
        self.consistency = consistency
        self.retry_policy = retry_policy or RetryPolicy()
        self.extractor = extractor
        self.documents = DocumentRepository()
        self.ledger = IngestionLedger()

        self._handlers = {
            FETCH_AND_EXTRACT: self._fetch_and_extract,
            SEGMENT: self._segment,
            VECTORIZE: self._vectorize,
            PERSIST: self._persist,
            FINALIZE: self._finalize,
        }

    async def run(self, job: IngestionJob) -> str:
        """Returns the document status the run ended with."""
        async with self.session_factory() as db:
            doc = await self.documents.get_document(db, job.session_id, job.document_id)
            if doc is None:
                log.warning("Ingestion skipped, document missing | document_id=%s", job.document_id)
                return "missing"
            if doc.status in ("ready", "error"):
                log.info(
                    "Ingestion skipped, document already terminal | document_id=%s | status=%s",
                    job.document_id,
                    doc.status,
                )
                return doc.status
            completed = await self.ledger.completed_steps(db, job.document_id)

        log.info(
            "Ingestion started | session_id=%s | document_id=%s | completed_steps=%s",
            job.session_id,
            job.document_id,
            list(completed),
        )

        ctx: StepContext = {}
        for step in STEPS:
            if step in completed:
                ctx[step] = completed[step]
                log.info("Step already completed, reusing output | document_id=%s | step=%s", job.document_id, step)
                continue

            try:
                output, attempts = await self._run_with_retry(job, step, ctx)
            except Exception as e:
                await self._fail(job, step, e)
                return "error"

            async with self.session_factory() as db:
                await self.ledger.record_step(
                    db, job.document_id, job.session_id, step, output, attempts
                )
            ctx[step] = output

        log.info("Ingestion finished | session_id=%s | document_id=%s", job.session_id, job.document_id)
        return "ready"

    async def _run_with_retry(self, job: IngestionJob, step: str, ctx: StepContext):
        handler = self._handlers[step]
        attempt = 0
        while True:
            attempt += 1
            try:
                return await handler(job, ctx), attempt
            except FatalPipelineError:
                raise
            except Exception as e:
                if attempt >= self.retry_policy.max_attempts:
                    log.error(
                        "Step failed after retries | document_id=%s | step=%s | attempts=%d | error=%s",
                        job.document_id,
                        step,
                        attempt,
                        str(e),
                    )
                    raise
                delay = self.retry_policy.delay(attempt - 1)
                log.warning(
                    "Step failed, retrying | document_id=%s | step=%s | attempt=%d | delay=%.2fs | error=%s",
                    job.document_id,
                    step,
                    attempt,
                    delay,
                    str(e),
                )
                await asyncio.sleep(delay)

    async def _report(
        self,
        job: IngestionJob,
        step_label: str,
        progress: int,
        message: str,
        status: str = "processing",
        total_chunks: Optional[int] = None,
        **extra: Any,
    ) -> None:
        async with self.session_factory() as db:
            await self.documents.update_progress(
                db,
                job.session_id,
                job.document_id,
                details={"step": step_label, "progress": progress, "message": message, **extra},
                status=status,
                total_chunks=total_chunks,
            )

    async def _fail(self, job: IngestionJob, step: str, error: Exception) -> None:
        reason = getattr(error, "error_message", None) or str(error) or type(error).__name__
        log.error(
            "Ingestion failed | session_id=%s | document_id=%s | step=%s | error=%s",
            job.session_id,
            job.document_id,
            step,
            reason,
        )
        async with self.session_factory() as db:
            await self.documents.update_progress(
                db,
                job.session_id,
                job.document_id,
                details={"error": reason, "step": step, "progress": 0, "message": "Processing failed"},
                status="error",
            )

    # ---------------------------------------------------------------
    # steps
    # ---------------------------------------------------------------
    async def _fetch_and_extract(self, job: IngestionJob, ctx: StepContext) -> dict:
        await self._report(job, "uploading", 10, "Fetching file from storage...")
        data = await self.blob_store.get(job.storage_key)

        await self._report(job, "extracting", 30, "Extracting text from document...")
        extracted = await self.extractor(data, job.content_type, job.filename)

        if not extracted.text.strip():
            raise FatalPipelineError("No text could be extracted from the document")
        return extracted.to_dict()

    async def _segment(self, job: IngestionJob, ctx: StepContext) -> dict:
        extracted = ctx[FETCH_AND_EXTRACT]
        expected = self.segmenter.estimate_segment_count(len(extracted["text"]))
        await self._report(job, "chunking", 50, f"Splitting text into about {expected} chunks...")
        segments = self.segmenter.split(extracted["text"], extracted.get("page_offsets"))
        if not segments:
            raise FatalPipelineError("Document produced no text segments")
        return {"segments": [s.to_dict() for s in segments]}

    async def _vectorize(self, job: IngestionJob, ctx: StepContext) -> dict:
        texts = [s["text"] for s in ctx[SEGMENT]["segments"]]
        await self._report(job, "embedding", 70, f"Generating embeddings for {len(texts)} chunks...")
        vectors = await self.vectorizer.embed_texts(texts)
        return {"vectors": vectors}

    async def _persist(self, job: IngestionJob, ctx: StepContext) -> dict:
        await self._report(job, "indexing", 90, "Indexing document...")
        segment_ids = await self.consistency.persist(
            job.document_id,
            job.session_id,
            job.filename,
            ctx[SEGMENT]["segments"],
            ctx[VECTORIZE]["vectors"],
        )
        await self._report(job, "indexing", 90, "Indexing document...", total_chunks=len(segment_ids))
        return {"segment_ids": segment_ids}

    async def _finalize(self, job: IngestionJob, ctx: StepContext) -> dict:
        segment_count = len(ctx[PERSIST]["segment_ids"])
        vector_count = len(ctx[VECTORIZE]["vectors"])
        if segment_count != vector_count:
            raise ConsistencyError(
                f"Stored {segment_count} segments but produced {vector_count} vectors"
            )

        await self._report(
            job,
            "complete",
            100,
            "Document ready!",
            status="ready",
            total_chunks=segment_count,
            page_count=ctx[FETCH_AND_EXTRACT].get("page_count"),
        )
        return {"status": "ready", "total_chunks": segment_count}


class IngestionRunner:
    """
    Runs ingestions as background asyncio tasks keyed by document id, detached
    from the request or connection that triggered them.
    """

    def __init__(
        self,
        machine: IngestionStateMachine,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.machine = machine
        self.session_factory = session_factory
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, job: IngestionJob) -> asyncio.Task:
        existing = self._tasks.get(job.document_id)
        if existing is not None and not existing.done():
            log.info("Ingestion already running | document_id=%s", job.document_id)
            return existing

        task = asyncio.create_task(self._guarded_run(job), name=f"ingest:{job.document_id}")
        self._tasks[job.document_id] = task

        def _forget(t: asyncio.Task, document_id: str = job.document_id) -> None:
            if self._tasks.get(document_id) is t:
                self._tasks.pop(document_id, None)

        task.add_done_callback(_forget)
        log.info("Ingestion scheduled | session_id=%s | document_id=%s", job.session_id, job.document_id)
        return task

    async def _guarded_run(self, job: IngestionJob) -> str:
        try:
            return await self.machine.run(job)
        except Exception:
            # status bookkeeping itself failed; the ledger lets resume_pending pick it up
            log.exception("Ingestion task crashed | document_id=%s", job.document_id)
            return "crashed"

    async def resume_pending(self) -> int:
        """Re-launch every document left pending or processing by a previous process."""
        async with self.session_factory() as db:
            docs = await DocumentRepository().unfinished_documents(db)

        for doc in docs:
            self.schedule(IngestionJob.from_document(doc))

        if docs:
            log.info("Resumed unfinished ingestions | count=%d", len(docs))
        return len(docs)

    async def wait_idle(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
