"""Chunked upload sessions.

A session is created up front with the total size, chunks arrive in any order
(duplicates overwrite), and once every index is present the chunks are
reassembled and handed to the completion handler, normally
``ImageService.ingest``. Sessions live in process memory only; chunk bytes are
staged through the ``ChunkStaging`` port so they do not pile up in RAM.

Terminal sessions leave a tombstone behind for one more timeout period so a
late chunk gets ``SessionExpired`` (or the actual terminal state) instead of a
bare "not found".
"""
import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ..ports.storage_repo import ChunkStaging
from ...exceptions import (
    ChunkMismatch,
    ChunkWriteFailed,
    ImageTooLarge,
    InvalidChunk,
    MediaError,
    SessionExpired,
    SessionNotFound,
    UnsupportedFormat,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class SessionState(str, Enum):
    CREATED = "created"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.EXPIRED, SessionState.CANCELLED, SessionState.FAILED)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class UploadSession:
    session_id: str
    file_name: str
    content_type: str
    total_size: int
    chunk_size: int
    total_chunks: int
    created_at: float
    expires_at: float
    last_activity: float
    state: SessionState = SessionState.CREATED
    received: Set[int] = field(default_factory=set)
    retries: Dict[int, int] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    uploaded_by: Optional[str] = None
    error: Optional[str] = None
    result: Any = None
    finalizing: bool = False

    @property
    def is_complete(self) -> bool:
        return len(self.received) == self.total_chunks

    def missing(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.received]

    @property
    def progress(self) -> float:
        return round(len(self.received) / self.total_chunks * 100, 1) if self.total_chunks else 0.0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "file_name": self.file_name,
            "content_type": self.content_type,
            "total_size": self.total_size,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
            "received_chunks": len(self.received),
            "missing_chunks": self.missing(),
            "progress": self.progress,
            "state": self.state.value,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "error": self.error,
            "file_path": getattr(self.result, "file_path", None),
        }


@dataclass
class UploadPlan:
    mode: str  # "single" | "chunked"
    total_size: int
    chunk_size: int
    total_chunks: int

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "total_size": self.total_size,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
        }


@dataclass
class ChunkAck:
    session_id: str
    index: int
    received: int
    total_chunks: int
    state: SessionState
    complete: bool = False
    file_path: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "chunk_index": self.index,
            "received_chunks": self.received,
            "total_chunks": self.total_chunks,
            "state": self.state.value,
            "complete": self.complete,
            "file_path": self.file_path,
            "warnings": self.warnings,
        }


CompletionHandler = Callable[[UploadSession, bytes], Awaitable[Any]]


class UploadSessionManager:
    def __init__(
        self,
        staging: ChunkStaging,
        on_complete: Optional[CompletionHandler] = None,
        *,
        chunk_size: int = 2 * MB,
        max_chunk_size: Optional[int] = None,
        max_file_size: int = 200 * MB,
        max_chunks: int = 100,
        single_upload_threshold: int = 25 * MB,
        session_timeout: float = 1800,
        sweep_interval: float = 60,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        attempt_timeout: float = 300.0,
        allowed_types: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.staging = staging
        self.on_complete = on_complete
        self.chunk_size = chunk_size
        self.max_chunk_size = max_chunk_size
        self.max_file_size = max_file_size
        self.max_chunks = max_chunks
        self.single_upload_threshold = single_upload_threshold
        self.session_timeout = session_timeout
        self.sweep_interval = sweep_interval
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.attempt_timeout = attempt_timeout
        self.allowed_types = set(allowed_types) if allowed_types else None
        self._clock = clock
        self._sleep = sleep
        self._sessions: Dict[str, UploadSession] = {}
        self._tombstones: Dict[str, UploadSession] = {}
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, staging: ChunkStaging, on_complete: Optional[CompletionHandler] = None):
        return cls(
            staging,
            on_complete,
            chunk_size=settings.UPLOAD_CHUNK_SIZE,
            max_chunk_size=settings.max_chunk_size,
            max_file_size=settings.UPLOAD_MAX_FILE_SIZE,
            max_chunks=settings.UPLOAD_MAX_CHUNKS,
            single_upload_threshold=settings.PROGRESSIVE_UPLOAD_THRESHOLD,
            session_timeout=settings.UPLOAD_SESSION_TIMEOUT_SECONDS,
            sweep_interval=settings.UPLOAD_SESSION_SWEEP_INTERVAL_SECONDS,
            retry_attempts=settings.UPLOAD_RETRY_ATTEMPTS,
            retry_delay=settings.UPLOAD_RETRY_DELAY_SECONDS,
            attempt_timeout=settings.UPLOAD_TIMEOUT_SECONDS,
            allowed_types=settings.ALLOWED_IMAGE_TYPES,
        )

    # -- planning ---------------------------------------------------------

    def plan(self, total_size: int, chunk_size: Optional[int] = None) -> UploadPlan:
        chunk_size = chunk_size or self.chunk_size
        if total_size <= 0:
            raise InvalidChunk("total_size must be positive")
        if chunk_size <= 0:
            raise InvalidChunk("chunk_size must be positive")
        if self.max_chunk_size and chunk_size > self.max_chunk_size:
            raise InvalidChunk(
                f"chunk_size {chunk_size} exceeds the per-request limit of {self.max_chunk_size} bytes",
                suggestions=["Use a smaller chunk_size, or omit it to use the server default"],
            )
        if total_size > self.max_file_size:
            raise ImageTooLarge(
                f"File is {total_size / MB:.1f}MB, the limit is {self.max_file_size / MB:.0f}MB",
                suggestions=["Compress the image before uploading"],
            )
        total_chunks = math.ceil(total_size / chunk_size)
        if total_chunks > self.max_chunks:
            raise ImageTooLarge(
                f"File would need {total_chunks} chunks, the limit is {self.max_chunks}",
                suggestions=["Use a larger chunk size"],
            )
        mode = "single" if total_size <= self.single_upload_threshold else "chunked"
        return UploadPlan(mode=mode, total_size=total_size, chunk_size=chunk_size, total_chunks=total_chunks)

    def create_session(
        self,
        file_name: str,
        content_type: str,
        total_size: int,
        chunk_size: Optional[int] = None,
        metadata: Optional[dict] = None,
        uploaded_by: Optional[str] = None,
    ) -> UploadSession:
        if self.allowed_types and content_type not in self.allowed_types:
            raise UnsupportedFormat(
                f"Content type {content_type} is not allowed",
                suggestions=["Convert the image to JPEG or PNG format"],
            )
        plan = self.plan(total_size, chunk_size)
        now = self._clock()
        session = UploadSession(
            session_id=uuid.uuid4().hex,
            file_name=file_name,
            content_type=content_type,
            total_size=total_size,
            chunk_size=plan.chunk_size,
            total_chunks=plan.total_chunks,
            created_at=now,
            expires_at=now + self.session_timeout,
            last_activity=now,
            metadata=dict(metadata or {}),
            uploaded_by=uploaded_by,
        )
        self._sessions[session.session_id] = session
        logger.info(
            f"Upload session {session.session_id} created for {file_name} "
            f"({total_size} bytes, {plan.total_chunks} chunks)"
        )
        return session

    # -- lookup -----------------------------------------------------------

    def _live(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            tombstone = self._tombstones.get(session_id)
            if tombstone is None:
                raise SessionNotFound(f"Upload session {session_id} not found")
            if tombstone.state == SessionState.EXPIRED:
                raise SessionExpired(
                    f"Upload session {session_id} has expired",
                    suggestions=["Start a new upload"],
                )
            raise SessionNotFound(f"Upload session {session_id} is {tombstone.state.value}")
        if self._clock() > session.expires_at:
            self._finish(session, SessionState.EXPIRED, "Session expired")
            raise SessionExpired(f"Upload session {session_id} has expired", suggestions=["Start a new upload"])
        return session

    def get(self, session_id: str) -> UploadSession:
        try:
            return self._live(session_id)
        except SessionExpired:
            return self._tombstones[session_id]
        except SessionNotFound:
            if session_id in self._tombstones:
                return self._tombstones[session_id]
            raise

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # -- chunks -----------------------------------------------------------

    async def receive_chunk(
        self,
        session_id: str,
        index: int,
        data: bytes,
        total_chunks: Optional[int] = None,
        on_complete: Optional[CompletionHandler] = None,
    ) -> ChunkAck:
        session = self._live(session_id)
        if total_chunks is not None and total_chunks != session.total_chunks:
            raise ChunkMismatch(
                f"Session expects {session.total_chunks} chunks, request declared {total_chunks}"
            )
        if index < 0 or index >= session.total_chunks:
            raise InvalidChunk(f"Chunk index {index} out of range 0..{session.total_chunks - 1}")
        if not data:
            raise InvalidChunk(f"Chunk {index} is empty")
        if len(data) > session.chunk_size:
            raise InvalidChunk(f"Chunk {index} is {len(data)} bytes, the chunk size is {session.chunk_size}")

        if session.finalizing:
            # Completion already running on the full set of chunks.
            return self._ack(session, index)

        await self._write_with_retry(session, index, data)
        if session.state.terminal:
            # Session ended while this chunk was being written.
            await asyncio.to_thread(self.staging.discard, session_id)
            self._live(session_id)
        session.received.add(index)
        session.last_activity = self._clock()
        if session.state == SessionState.CREATED:
            session.state = SessionState.RECEIVING
        logger.debug(f"Session {session_id}: chunk {index + 1}/{session.total_chunks} received")

        if session.is_complete and not session.finalizing:
            return await self._complete(session, index, on_complete or self.on_complete)
        return self._ack(session, index)

    async def _write_with_retry(self, session: UploadSession, index: int, data: bytes) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self.staging.write_chunk, session.session_id, index, data),
                    timeout=self.attempt_timeout,
                )
                return
            except (OSError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt < self.retry_attempts:
                    session.retries[index] = session.retries.get(index, 0) + 1
                    delay = self.retry_delay * 2 ** (attempt - 1)
                    logger.warning(
                        f"Session {session.session_id}: writing chunk {index} failed "
                        f"(attempt {attempt}/{self.retry_attempts}), retrying in {delay}s: {e}"
                    )
                    await self._sleep(delay)
        logger.error(f"Session {session.session_id}: chunk {index} could not be staged: {last_error}")
        self._finish(session, SessionState.FAILED, f"Chunk {index} could not be stored: {last_error}")
        raise ChunkWriteFailed(
            f"Chunk {index} could not be stored after {self.retry_attempts} attempts",
            suggestions=["Start a new upload session and send the chunks again"],
            retry_after=int(self.retry_delay) or 1,
        )

    def _assemble(self, session: UploadSession) -> bytes:
        parts = []
        for i in range(session.total_chunks):
            try:
                parts.append(self.staging.read_chunk(session.session_id, i))
            except OSError as e:
                session.received.discard(i)
                raise ChunkWriteFailed(
                    f"Missing chunk {i} during assembly: {e}", suggestions=["Re-upload the missing chunk"]
                ) from e
        return b"".join(parts)

    async def _complete(self, session: UploadSession, index: int, handler: Optional[CompletionHandler]) -> ChunkAck:
        session.finalizing = True
        logger.info(f"Session {session.session_id}: all chunks received, assembling {session.file_name}")
        try:
            data = await asyncio.to_thread(self._assemble, session)
            if len(data) != session.total_size:
                raise ChunkMismatch(
                    f"Assembled {len(data)} bytes, expected {session.total_size}",
                    suggestions=["Start a new upload"],
                )
            result = await handler(session, data) if handler else None
        except MediaError as e:
            session.finalizing = False
            if e.retriable:
                logger.warning(f"Session {session.session_id}: completion deferred: {e.message}")
            else:
                self._finish(session, SessionState.FAILED, e.message)
            raise
        except Exception as e:
            session.finalizing = False
            self._finish(session, SessionState.FAILED, str(e))
            raise

        session.result = result
        self._finish(session, SessionState.COMPLETED)
        ack = self._ack(session, index)
        ack.complete = True
        ack.file_path = getattr(result, "file_path", None)
        ack.warnings = list(getattr(result, "warnings", []) or [])
        return ack

    def _ack(self, session: UploadSession, index: int) -> ChunkAck:
        return ChunkAck(
            session_id=session.session_id,
            index=index,
            received=len(session.received),
            total_chunks=session.total_chunks,
            state=session.state,
        )

    # -- termination ------------------------------------------------------

    def _finish(self, session: UploadSession, state: SessionState, error: Optional[str] = None) -> None:
        session.state = state
        session.error = error
        self._sessions.pop(session.session_id, None)
        self._tombstones[session.session_id] = session
        try:
            self.staging.discard(session.session_id)
        except OSError as e:
            logger.warning(f"Failed to discard staged chunks for {session.session_id}: {e}")
        if state == SessionState.COMPLETED:
            logger.info(f"Upload session {session.session_id} completed")
        else:
            logger.info(f"Upload session {session.session_id} {state.value}{f': {error}' if error else ''}")

    def cancel(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            tombstone = self._tombstones.get(session_id)
            if tombstone is None:
                raise SessionNotFound(f"Upload session {session_id} not found")
            return tombstone
        self._finish(session, SessionState.CANCELLED)
        return session

    def expire_stale(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [s for s in self._sessions.values() if now > s.expires_at and not s.finalizing]
        for session in expired:
            self._finish(session, SessionState.EXPIRED, "Session expired")
        for session_id, tombstone in list(self._tombstones.items()):
            if now > tombstone.expires_at + self.session_timeout:
                del self._tombstones[session_id]
        if expired:
            logger.info(f"Expired {len(expired)} stale upload sessions")
        return len(expired)

    # -- sweeper ----------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sweep())
        logger.info(f"Upload session sweeper started (interval {self.sweep_interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Upload session sweeper stopped")

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.expire_stale()
            except Exception:
                logger.exception("Upload session sweep failed")
