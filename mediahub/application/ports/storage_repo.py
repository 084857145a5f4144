from typing import Optional, Protocol


class StorageRepository(Protocol):
    def save_bytes(self, key: str, data: bytes) -> str:
        ...

    def read_bytes(self, key: str) -> Optional[bytes]:
        ...

    def delete(self, key: str) -> bool:
        ...

    def exists(self, key: str) -> bool:
        ...


class ChunkStaging(Protocol):
    def write_chunk(self, session_id: str, index: int, data: bytes) -> None:
        ...

    def read_chunk(self, session_id: str, index: int) -> bytes:
        ...

    def discard(self, session_id: str) -> None:
        ...
