import os
import shutil
from typing import Optional

from ...application.ports.storage_repo import ChunkStaging, StorageRepository


class LocalStorageRepository(StorageRepository):
    def __init__(self, upload_dir: str) -> None:
        self.upload_dir = os.path.abspath(upload_dir)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.upload_dir, key))
        if os.path.commonpath([path, self.upload_dir]) != self.upload_dir or path == self.upload_dir:
            raise ValueError(f"Storage key escapes upload directory: {key!r}")
        return path

    def save_bytes(self, key: str, data: bytes) -> str:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        return path

    def read_bytes(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not os.path.isfile(path):
            return False
        os.remove(path)
        return True

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))


class LocalChunkStaging(ChunkStaging):
    """Stages chunk bytes under ``<upload_dir>/.staging/<session>/<index>.part``."""

    def __init__(self, upload_dir: str) -> None:
        self.root = os.path.join(os.path.abspath(upload_dir), ".staging")

    def _session_dir(self, session_id: str) -> str:
        if not session_id.isalnum():
            raise ValueError(f"Invalid session id: {session_id!r}")
        return os.path.join(self.root, session_id)

    def write_chunk(self, session_id: str, index: int, data: bytes) -> None:
        dest_dir = self._session_dir(session_id)
        os.makedirs(dest_dir, exist_ok=True)
        with open(os.path.join(dest_dir, f"{index}.part"), "wb") as f:
            f.write(data)

    def read_chunk(self, session_id: str, index: int) -> bytes:
        with open(os.path.join(self._session_dir(session_id), f"{index}.part"), "rb") as f:
            return f.read()

    def discard(self, session_id: str) -> None:
        shutil.rmtree(self._session_dir(session_id), ignore_errors=True)
