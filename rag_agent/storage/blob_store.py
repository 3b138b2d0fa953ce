from pathlib import Path

from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.utils.thread_pool import run_sync


class LocalBlobStore:
    """
    Opaque byte storage keyed by string, backed by a local directory.
    Keys look like documents/{session_id}/{document_id}/{filename}.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        # prune empty per-document / per-session folders
        for parent in path.parents:
            if parent == self.base_dir.resolve() or any(parent.iterdir()):
                break
            parent.rmdir()
        return True

    async def put(self, key: str, data: bytes) -> None:
        await run_sync(self._write, key, data)
        log.info("Blob stored | key=%s | size=%d", key, len(data))

    async def get(self, key: str) -> bytes:
        return await run_sync(lambda: self._path(key).read_bytes())

    async def delete(self, key: str) -> bool:
        deleted = await run_sync(self._delete, key)
        log.info("Blob deleted | key=%s | existed=%s", key, deleted)
        return deleted
