from __future__ import annotations

import hashlib
import re
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import faiss
from langchain_community.docstore.in_memory import InMemoryDocstore
from langchain_community.vectorstores import FAISS
from langchain_community.vectorstores.utils import DistanceStrategy
from langchain_core.embeddings import Embeddings

from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.utils.thread_pool import run_sync


@dataclass
class VectorEntry:
    id: str
    values: List[float]
    # advisory mirror for debugging / display, never used to rebuild text
    metadata: Dict[str, object] = field(default_factory=dict)


class FaissVectorIndex:
    """
    One FAISS index per namespace (session id), persisted under
    {base_dir}/{namespace}. Entries are keyed by segment id and scored by
    cosine similarity (inner product over L2-normalised vectors).
    """

    def __init__(self, base_dir: str | Path, embeddings: Embeddings, dimensions: int):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.embeddings = embeddings
        self.dimensions = dimensions
        self._stores: Dict[str, FAISS] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ---------------------------------------------------------------
    # namespace plumbing
    # ---------------------------------------------------------------
    def _namespace_dir(self, namespace: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_\-]", "_", namespace)
        digest = hashlib.sha1(namespace.encode("utf-8")).hexdigest()[:8]
        return self.base_dir / f"{safe}_{digest}"

    def _lock_for(self, namespace: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(namespace, threading.Lock())

    def _empty_store(self) -> FAISS:
        return FAISS(
            embedding_function=self.embeddings,
            index=faiss.IndexFlatIP(self.dimensions),
            docstore=InMemoryDocstore(),
            index_to_docstore_id={},
            distance_strategy=DistanceStrategy.MAX_INNER_PRODUCT,
            normalize_L2=True,
        )

    def _store(self, namespace: str) -> FAISS:
        if namespace in self._stores:
            return self._stores[namespace]

        path = self._namespace_dir(namespace)
        if (path / "index.faiss").exists():
            store = FAISS.load_local(
                str(path),
                self.embeddings,
                allow_dangerous_deserialization=True,
                distance_strategy=DistanceStrategy.MAX_INNER_PRODUCT,
                normalize_L2=True,
            )
            log.info("FAISS namespace loaded | namespace=%s | entries=%d", namespace, store.index.ntotal)
        else:
            store = self._empty_store()
        self._stores[namespace] = store
        return store

    def _save(self, namespace: str, store: FAISS) -> None:
        store.save_local(str(self._namespace_dir(namespace)))

    @staticmethod
    def _present(store: FAISS, ids: Sequence[str]) -> List[str]:
        existing = set(store.index_to_docstore_id.values())
        return [i for i in ids if i in existing]

    # ---------------------------------------------------------------
    # blocking operations (run on the IO pool)
    # ---------------------------------------------------------------
    def _upsert_sync(self, namespace: str, entries: Sequence[VectorEntry]) -> int:
        with self._lock_for(namespace):
            store = self._store(namespace)
            ids = [e.id for e in entries]
            stale = self._present(store, ids)
            if stale:
                store.delete(stale)
            store.add_embeddings(
                text_embeddings=[(str(e.metadata.get("preview", "")), e.values) for e in entries],
                metadatas=[{**e.metadata, "segment_id": e.id} for e in entries],
                ids=ids,
            )
            self._save(namespace, store)
            return len(entries)

    def _delete_sync(self, namespace: str, ids: Sequence[str]) -> int:
        with self._lock_for(namespace):
            store = self._store(namespace)
            present = self._present(store, ids)
            if present:
                store.delete(present)
                self._save(namespace, store)
            return len(present)

    def _query_sync(self, namespace: str, vector: Sequence[float], top_k: int) -> List[Tuple[str, float]]:
        with self._lock_for(namespace):
            store = self._store(namespace)
            if store.index.ntotal == 0:
                return []
            hits = store.similarity_search_with_score_by_vector(list(vector), k=top_k)
        return [(doc.metadata["segment_id"], float(score)) for doc, score in hits]

    def _drop_sync(self, namespace: str) -> None:
        with self._lock_for(namespace):
            self._stores.pop(namespace, None)
            shutil.rmtree(self._namespace_dir(namespace), ignore_errors=True)

    # ---------------------------------------------------------------
    # async API
    # ---------------------------------------------------------------
    async def upsert(self, namespace: str, entries: Sequence[VectorEntry]) -> int:
        if not entries:
            return 0
        count = await run_sync(self._upsert_sync, namespace, list(entries))
        log.info("Vectors upserted | namespace=%s | count=%d", namespace, count)
        return count

    async def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        removed = await run_sync(self._delete_sync, namespace, list(ids))
        log.info("Vectors deleted | namespace=%s | requested=%d | removed=%d", namespace, len(ids), removed)
        return removed

    async def query(self, namespace: str, vector: Sequence[float], top_k: int) -> List[Tuple[str, float]]:
        return await run_sync(self._query_sync, namespace, vector, top_k)

    async def drop_namespace(self, namespace: str) -> None:
        await run_sync(self._drop_sync, namespace)
        log.info("Vector namespace dropped | namespace=%s", namespace)

    def count(self, namespace: str) -> int:
        with self._lock_for(namespace):
            return self._store(namespace).index.ntotal

    def ids(self, namespace: str) -> set[str]:
        with self._lock_for(namespace):
            return set(self._store(namespace).index_to_docstore_id.values())
