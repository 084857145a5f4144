import itertools
from types import SimpleNamespace

import pytest

from mediahub.application.services.upload_sessions import SessionState, UploadSessionManager
from mediahub.exceptions import (
    ChunkMismatch,
    ChunkWriteFailed,
    ImageTooLarge,
    InvalidChunk,
    SessionExpired,
    SessionNotFound,
    StorageWriteFailed,
    UnsupportedFormat,
)

MB = 1024 * 1024


class FakeStaging:
    def __init__(self):
        self.chunks = {}
        self.fail_writes = 0
        self.discarded = []

    def write_chunk(self, session_id, index, data):
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise OSError("staging disk full")
        self.chunks[(session_id, index)] = data

    def read_chunk(self, session_id, index):
        try:
            return self.chunks[(session_id, index)]
        except KeyError:
            raise FileNotFoundError(f"{session_id}/{index}.part")

    def discard(self, session_id):
        self.discarded.append(session_id)
        for key in [k for k in self.chunks if k[0] == session_id]:
            del self.chunks[key]


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class Collector:
    def __init__(self):
        self.payloads = []

    async def __call__(self, session, data):
        self.payloads.append(data)
        return SimpleNamespace(file_path=f"{session.session_id}.jpg", warnings=[])


def make_manager(staging=None, **kwargs):
    kwargs.setdefault("clock", FakeClock())
    kwargs.setdefault("sleep", RecordingSleep())
    return UploadSessionManager(staging or FakeStaging(), Collector(), **kwargs)


def test_plan_splits_large_files_into_chunks():
    manager = make_manager()
    plan = manager.plan(30 * MB)
    assert plan.mode == "chunked"
    assert plan.chunk_size == 2 * MB
    assert plan.total_chunks == 15


def test_plan_small_file_is_single_shot():
    assert make_manager().plan(10 * MB).mode == "single"


def test_plan_rejects_oversized_files():
    manager = make_manager()
    with pytest.raises(ImageTooLarge):
        manager.plan(201 * MB)
    with pytest.raises(ImageTooLarge):
        manager.plan(150 * MB, chunk_size=1 * MB)


def test_create_session_rejects_disallowed_type():
    manager = make_manager(allowed_types=["image/jpeg"])
    with pytest.raises(UnsupportedFormat):
        manager.create_session("doc.pdf", "application/pdf", 1000)


@pytest.mark.asyncio
async def test_any_arrival_order_reassembles_original_bytes():
    payload = b"0123456789"
    for order in itertools.permutations(range(3)):
        manager = make_manager(chunk_size=4)
        session = manager.create_session("a.jpg", "image/jpeg", len(payload))
        acks = []
        for index in order:
            chunk = payload[index * 4:(index + 1) * 4]
            acks.append(await manager.receive_chunk(session.session_id, index, chunk))
        assert acks[-1].complete is True
        assert acks[-1].file_path == f"{session.session_id}.jpg"
        assert all(not ack.complete for ack in acks[:-1])
        assert manager.on_complete.payloads == [payload]
        assert manager.get(session.session_id).state == SessionState.COMPLETED


@pytest.mark.asyncio
async def test_large_file_completes_only_after_last_of_fifteen_chunks():
    KB = 1024
    manager = make_manager(chunk_size=2 * KB, single_upload_threshold=25 * KB)
    payload = bytes(i % 251 for i in range(30 * KB))
    assert manager.plan(len(payload)).mode == "chunked"

    session = manager.create_session("poster.jpg", "image/jpeg", len(payload))
    assert session.total_chunks == 15

    acks = []
    for index in range(15):
        chunk = payload[index * 2 * KB:(index + 1) * 2 * KB]
        acks.append(await manager.receive_chunk(session.session_id, index, chunk, total_chunks=15))

    assert [ack.complete for ack in acks[:14]] == [False] * 14
    assert [ack.received for ack in acks[:14]] == list(range(1, 15))
    assert manager.on_complete.payloads[0] == payload
    assert len(manager.on_complete.payloads) == 1
    assert acks[14].complete is True
    assert acks[14].state == SessionState.COMPLETED
    assert len(manager.on_complete.payloads[0]) == 30 * KB


@pytest.mark.asyncio
async def test_duplicate_chunk_overwrites():
    manager = make_manager(chunk_size=4)
    session = manager.create_session("a.jpg", "image/jpeg", 8)
    await manager.receive_chunk(session.session_id, 0, b"xxxx")
    await manager.receive_chunk(session.session_id, 0, b"abcd")
    ack = await manager.receive_chunk(session.session_id, 1, b"efgh")
    assert ack.complete
    assert manager.on_complete.payloads == [b"abcdefgh"]


@pytest.mark.asyncio
async def test_declared_total_must_match_session():
    manager = make_manager(chunk_size=4)
    session = manager.create_session("a.jpg", "image/jpeg", 8)
    with pytest.raises(ChunkMismatch):
        await manager.receive_chunk(session.session_id, 0, b"abcd", total_chunks=3)


@pytest.mark.asyncio
async def test_index_out_of_range_is_rejected():
    manager = make_manager(chunk_size=4)
    session = manager.create_session("a.jpg", "image/jpeg", 8)
    with pytest.raises(InvalidChunk):
        await manager.receive_chunk(session.session_id, 2, b"abcd")
    with pytest.raises(InvalidChunk):
        await manager.receive_chunk(session.session_id, 0, b"")


@pytest.mark.asyncio
async def test_size_mismatch_fails_session():
    staging = FakeStaging()
    manager = make_manager(staging, chunk_size=4)
    session = manager.create_session("a.jpg", "image/jpeg", 8)
    await manager.receive_chunk(session.session_id, 0, b"abcd")
    with pytest.raises(ChunkMismatch):
        await manager.receive_chunk(session.session_id, 1, b"ef")
    assert manager.get(session.session_id).state == SessionState.FAILED
    assert session.session_id in staging.discarded
    assert manager.on_complete.payloads == []
    with pytest.raises(SessionNotFound) as exc:
        await manager.receive_chunk(session.session_id, 1, b"efgh")
    assert "failed" in exc.value.message


@pytest.mark.asyncio
async def test_expired_session_rejects_late_chunks():
    clock = FakeClock()
    staging = FakeStaging()
    manager = make_manager(staging, chunk_size=4, session_timeout=60, clock=clock)
    session = manager.create_session("a.jpg", "image/jpeg", 8)
    await manager.receive_chunk(session.session_id, 0, b"abcd")

    clock.now += 61
    with pytest.raises(SessionExpired):
        await manager.receive_chunk(session.session_id, 1, b"efgh")
    with pytest.raises(SessionExpired):
        await manager.receive_chunk(session.session_id, 1, b"efgh")
    assert staging.chunks == {}
    assert manager.on_complete.payloads == []


def test_expire_stale_sweeps_and_purges_tombstones():
    clock = FakeClock()
    manager = make_manager(session_timeout=60, clock=clock)
    old = manager.create_session("a.jpg", "image/jpeg", 100)
    clock.now += 30
    fresh = manager.create_session("b.jpg", "image/jpeg", 100)
    clock.now += 31

    assert manager.expire_stale() == 1
    assert manager.get(old.session_id).state == SessionState.EXPIRED
    assert manager.get(fresh.session_id).state == SessionState.CREATED

    clock.now += 200
    manager.expire_stale()
    with pytest.raises(SessionNotFound):
        manager.get(old.session_id)


@pytest.mark.asyncio
async def test_unknown_and_cancelled_sessions():
    manager = make_manager(chunk_size=4)
    with pytest.raises(SessionNotFound):
        await manager.receive_chunk("nope", 0, b"abcd")

    session = manager.create_session("a.jpg", "image/jpeg", 8)
    assert manager.cancel(session.session_id).state == SessionState.CANCELLED
    with pytest.raises(SessionNotFound) as exc:
        await manager.receive_chunk(session.session_id, 0, b"abcd")
    assert "cancelled" in exc.value.message


@pytest.mark.asyncio
async def test_chunk_write_retries_with_backoff():
    staging = FakeStaging()
    sleep = RecordingSleep()
    manager = make_manager(staging, chunk_size=4, retry_delay=1.0, sleep=sleep)
    session = manager.create_session("a.jpg", "image/jpeg", 8)

    staging.fail_writes = 2
    ack = await manager.receive_chunk(session.session_id, 0, b"abcd")
    assert ack.received == 1
    assert sleep.delays == [1.0, 2.0]
    assert session.retries[0] == 2


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_session():
    staging = FakeStaging()
    manager = make_manager(staging, chunk_size=4, retry_attempts=3)
    session = manager.create_session("a.jpg", "image/jpeg", 8)
    await manager.receive_chunk(session.session_id, 1, b"efgh")

    staging.fail_writes = 3
    with pytest.raises(ChunkWriteFailed) as exc:
        await manager.receive_chunk(session.session_id, 0, b"abcd")
    assert exc.value.retriable is True

    failed = manager.get(session.session_id)
    assert failed.state == SessionState.FAILED
    assert "Chunk 0" in failed.error
    assert session.session_id in staging.discarded
    assert staging.chunks == {}
    assert manager.active_count == 0

    with pytest.raises(SessionNotFound) as late:
        await manager.receive_chunk(session.session_id, 0, b"abcd")
    assert "failed" in late.value.message
    assert manager.on_complete.payloads == []


@pytest.mark.asyncio
async def test_chunk_written_after_session_ended_is_discarded():
    staging = FakeStaging()
    manager = make_manager(staging, chunk_size=4)
    session = manager.create_session("a.jpg", "image/jpeg", 8)

    original_write = staging.write_chunk

    def write_then_cancel(session_id, index, data):
        original_write(session_id, index, data)
        manager.cancel(session_id)

    staging.write_chunk = write_then_cancel
    with pytest.raises(SessionNotFound):
        await manager.receive_chunk(session.session_id, 0, b"abcd")
    assert staging.chunks == {}
    assert manager.get(session.session_id).received == set()


@pytest.mark.asyncio
async def test_retriable_completion_failure_can_be_resumed():
    manager = make_manager(chunk_size=4)
    calls = []

    async def flaky(session, data):
        calls.append(data)
        if len(calls) == 1:
            raise StorageWriteFailed("disk busy")
        return SimpleNamespace(file_path="done.jpg", warnings=["slow disk"])

    session = manager.create_session("a.jpg", "image/jpeg", 8)
    await manager.receive_chunk(session.session_id, 0, b"abcd", on_complete=flaky)
    with pytest.raises(StorageWriteFailed):
        await manager.receive_chunk(session.session_id, 1, b"efgh", on_complete=flaky)
    assert manager.get(session.session_id).state == SessionState.RECEIVING

    ack = await manager.receive_chunk(session.session_id, 1, b"efgh", on_complete=flaky)
    assert ack.complete and ack.file_path == "done.jpg"
    assert ack.warnings == ["slow disk"]
    assert calls == [b"abcdefgh", b"abcdefgh"]


@pytest.mark.asyncio
async def test_sweeper_start_stop():
    manager = make_manager(sweep_interval=0.01)
    await manager.start()
    await manager.stop()
    assert manager._task is None


def test_plan_rejects_chunks_larger_than_request_limit():
    manager = make_manager(max_chunk_size=4 * MB)
    with pytest.raises(InvalidChunk):
        manager.plan(40 * MB, chunk_size=5 * MB)
    with pytest.raises(InvalidChunk):
        manager.create_session("a.jpg", "image/jpeg", 40 * MB, chunk_size=5 * MB)
    assert manager.active_count == 0
    assert manager.plan(40 * MB, chunk_size=4 * MB).total_chunks == 10


def test_from_settings_caps_chunks_at_request_limit():
    settings = SimpleNamespace(
        UPLOAD_CHUNK_SIZE=2 * MB,
        max_chunk_size=25 * MB,
        UPLOAD_MAX_FILE_SIZE=200 * MB,
        UPLOAD_MAX_CHUNKS=100,
        PROGRESSIVE_UPLOAD_THRESHOLD=25 * MB,
        UPLOAD_SESSION_TIMEOUT_SECONDS=1800,
        UPLOAD_SESSION_SWEEP_INTERVAL_SECONDS=60,
        UPLOAD_RETRY_ATTEMPTS=3,
        UPLOAD_RETRY_DELAY_SECONDS=1.0,
        UPLOAD_TIMEOUT_SECONDS=300,
        ALLOWED_IMAGE_TYPES=["image/jpeg"],
    )
    manager = UploadSessionManager.from_settings(settings, FakeStaging())
    with pytest.raises(InvalidChunk):
        manager.plan(60 * MB, chunk_size=30 * MB)
