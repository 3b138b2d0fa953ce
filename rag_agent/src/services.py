from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from db.database import build_session_factory
from db.database import engine as default_engine
from orchestrator.orchestrator_manager import OrchestratorManager
from rag_agent.graph.orchestrator import OrchestratorDeps
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.document_chat.retrieval import RetrievalEngine
from rag_agent.src.document_ingestion.pipeline import (
    Extractor,
    IngestionRunner,
    IngestionStateMachine,
    RetryPolicy,
)
from rag_agent.src.document_ingestion.segmenter import Segmenter, SegmenterConfig
from rag_agent.src.document_ingestion.vectorizer import Vectorizer
from rag_agent.src.document_store.consistency import ConsistencyLayer
from rag_agent.src.document_store.vector_index import FaissVectorIndex
from rag_agent.src.session.lifecycle import SessionLifecycle
from rag_agent.storage.blob_store import LocalBlobStore
from rag_agent.tools.document_tools import TOOL_SCHEMAS
from rag_agent.utils.config_loader import load_config, resolve_path
from rag_agent.utils.document_ops import extract_text
from rag_agent.utils.file_io import ALLOWED_CONTENT_TYPES, MAX_UPLOAD_BYTES
from rag_agent.utils.model_loader import ModelLoader


@dataclass
class AppServices:
    config: dict
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    blob_store: LocalBlobStore
    vector_index: FaissVectorIndex
    segmenter: Segmenter
    vectorizer: Vectorizer
    consistency: ConsistencyLayer
    ingestion: IngestionStateMachine
    runner: IngestionRunner
    retrieval: RetrievalEngine
    lifecycle: SessionLifecycle
    orchestrators: OrchestratorManager
    allowed_content_types: set[str]
    max_upload_bytes: int
    sweep_interval_seconds: float


def build_services(
    config: Optional[dict] = None,
    engine: Optional[AsyncEngine] = None,
    embeddings: Optional[Embeddings] = None,
    planner_llm: Optional[BaseChatModel] = None,
    answer_llm: Optional[BaseChatModel] = None,
    storage_root: Optional[Path] = None,
    extractor: Extractor = extract_text,
) -> AppServices:
    """
    Wire every component from the config. Model arguments left as None are
    loaded through ModelLoader; passing them in lets callers run offline.
    """
    config = config or load_config()
    engine = engine or default_engine
    session_factory = build_session_factory(engine)

    if embeddings is None or planner_llm is None or answer_llm is None:
        loader = ModelLoader(config)
        embeddings = embeddings or loader.load_embeddings()
        planner_llm = planner_llm or loader.load_llm("planner")
        answer_llm = answer_llm or loader.load_llm("answer")

    storage = config.get("storage", {})
    if storage_root is not None:
        blob_dir = storage_root / "blobs"
        faiss_dir = storage_root / "faiss_index"
    else:
        blob_dir = resolve_path(storage.get("blob_dir", "data/blobs"))
        faiss_dir = resolve_path(storage.get("faiss_dir", "faiss_index"))

    vectorizer = Vectorizer.from_config(embeddings, config)
    blob_store = LocalBlobStore(blob_dir)
    vector_index = FaissVectorIndex(faiss_dir, embeddings, vectorizer.dimensions)
    segmenter = Segmenter(SegmenterConfig.from_config(config))
    consistency = ConsistencyLayer(session_factory, vector_index, blob_store)

    ingestion = IngestionStateMachine(
        session_factory,
        blob_store,
        segmenter,
        vectorizer,
        consistency,
        retry_policy=RetryPolicy.from_config(config),
        extractor=extractor,
    )
    runner = IngestionRunner(ingestion, session_factory)

    retriever_cfg = config.get("retriever", {})
    retrieval = RetrievalEngine(
        session_factory,
        vectorizer,
        vector_index,
        default_top_k=retriever_cfg.get("top_k", 5),
        max_top_k=retriever_cfg.get("max_top_k", 10),
    )

    session_cfg = config.get("session", {})
    lifecycle = SessionLifecycle(
        session_factory,
        consistency,
        expiry=timedelta(hours=session_cfg.get("expiry_hours", 24)),
    )

    deps = OrchestratorDeps(
        session_factory=session_factory,
        retrieval=retrieval,
        consistency=consistency,
        planner=planner_llm.bind_tools(TOOL_SCHEMAS),
        answer_llm=answer_llm,
        history_window=session_cfg.get("history_window", 40),
        answer_history_window=session_cfg.get("answer_history_window", 4),
        documents_context_limit=session_cfg.get("documents_context_limit", 10),
    )
    orchestrators = OrchestratorManager(
        deps,
        maxsize=session_cfg.get("orchestrator_cache_size", 500),
        ttl=session_cfg.get("orchestrator_cache_ttl_seconds", 3600),
    )
    lifecycle.on_expire(orchestrators.evict)

    upload_cfg = config.get("upload", {})
    log.info("Services wired | blob_dir=%s | faiss_dir=%s", blob_dir, faiss_dir)

    return AppServices(
        config=config,
        engine=engine,
        session_factory=session_factory,
        blob_store=blob_store,
        vector_index=vector_index,
        segmenter=segmenter,
        vectorizer=vectorizer,
        consistency=consistency,
        ingestion=ingestion,
        runner=runner,
        retrieval=retrieval,
        lifecycle=lifecycle,
        orchestrators=orchestrators,
        allowed_content_types=set(upload_cfg.get("allowed_content_types", ALLOWED_CONTENT_TYPES)),
        max_upload_bytes=upload_cfg.get("max_bytes", MAX_UPLOAD_BYTES),
        sweep_interval_seconds=session_cfg.get("sweep_interval_seconds", 3600),
    )
