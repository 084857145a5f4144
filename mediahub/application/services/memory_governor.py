"""Process memory monitoring and tiered reclaim for the image pipeline.

The governor owns a sampler (psutil in production, a fake in tests) and the
codec whose cache it may clear or disable. Sampling runs on an explicit
asyncio task started and stopped by the application lifespan; tests drive it
with ``check_once()``.
"""
import asyncio
import gc
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..ports.codec import ImageCodec
from ..ports.memory_sampler import MemorySample, MemorySampler

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class MemoryPressure(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRESSURE_ORDER.index(self)


_PRESSURE_ORDER = [MemoryPressure.LOW, MemoryPressure.MEDIUM, MemoryPressure.HIGH, MemoryPressure.CRITICAL]


class ReclaimAction(str, Enum):
    NONE = "none"
    PREVENTIVE_GC = "preventive_gc"
    STANDARD_GC = "standard_gc"
    AGGRESSIVE = "aggressive"

    @property
    def intensity(self) -> int:
        return list(ReclaimAction).index(self)


_ACTION_FOR_PRESSURE = {
    MemoryPressure.LOW: ReclaimAction.NONE,
    MemoryPressure.MEDIUM: ReclaimAction.PREVENTIVE_GC,
    MemoryPressure.HIGH: ReclaimAction.STANDARD_GC,
    MemoryPressure.CRITICAL: ReclaimAction.AGGRESSIVE,
}

MEDIUM_THRESHOLD = 60.0
HIGH_THRESHOLD = 75.0
CRITICAL_THRESHOLD = 90.0


def classify(percent: float) -> MemoryPressure:
    if percent >= CRITICAL_THRESHOLD:
        return MemoryPressure.CRITICAL
    if percent >= HIGH_THRESHOLD:
        return MemoryPressure.HIGH
    if percent >= MEDIUM_THRESHOLD:
        return MemoryPressure.MEDIUM
    return MemoryPressure.LOW


@dataclass
class MemoryState:
    heap_used: int
    heap_total: int
    rss: int
    rss_limit: int
    heap_percent: float
    rss_percent: float
    pressure: MemoryPressure
    sampled_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def available_mb(self) -> float:
        """Headroom left under both the system total and the process limit."""
        system_free = max(0, self.heap_total - self.heap_used)
        process_free = max(0, self.rss_limit - self.rss)
        return min(system_free, process_free) / MB

    def to_dict(self) -> dict:
        return {
            "heap": {
                "used_mb": round(self.heap_used / MB, 1),
                "total_mb": round(self.heap_total / MB, 1),
                "percentage": round(self.heap_percent, 1),
            },
            "rss_mb": round(self.rss / MB, 1),
            "limit_mb": round(self.rss_limit / MB, 1),
            "available_mb": round(self.available_mb, 1),
            "rss_percentage": round(self.rss_percent, 1),
            "pressure": self.pressure.value,
            "sampled_at": self.sampled_at.isoformat(),
        }


class MemoryGovernor:
    AGGRESSIVE_PASSES = 3
    EMERGENCY_PASSES = 5

    def __init__(
        self,
        sampler: MemorySampler,
        codec: Optional[ImageCodec] = None,
        rss_limit_mb: int = 2048,
        interval: float = 30.0,
        cooldown: float = 1.0,
        collect: Callable[..., int] = gc.collect,
    ) -> None:
        self.sampler = sampler
        self.codec = codec
        self.rss_limit = rss_limit_mb * MB
        self.interval = interval
        self.cooldown = cooldown
        self._collect = collect
        self._task: Optional[asyncio.Task] = None
        self._restore_handle: Optional[asyncio.TimerHandle] = None
        self._restore_deadline: Optional[float] = None
        self._last_pressure = MemoryPressure.LOW
        self.last_state: Optional[MemoryState] = None
        self.last_action = ReclaimAction.NONE

    # -- sampling ---------------------------------------------------------

    def state_from_sample(self, sample: MemorySample) -> MemoryState:
        heap_percent = (sample.heap_used / sample.heap_total * 100) if sample.heap_total else 0.0
        rss_percent = (sample.rss / self.rss_limit * 100) if self.rss_limit else 0.0
        heap_level = classify(heap_percent)
        rss_level = classify(rss_percent)
        pressure = heap_level if heap_level.rank >= rss_level.rank else rss_level
        return MemoryState(
            heap_used=sample.heap_used,
            heap_total=sample.heap_total,
            rss=sample.rss,
            rss_limit=self.rss_limit,
            heap_percent=heap_percent,
            rss_percent=rss_percent,
            pressure=pressure,
        )

    def sample_memory(self) -> MemoryState:
        state = self.state_from_sample(self.sampler.sample())
        self.last_state = state
        self._log_transition(state)
        return state

    def is_under_pressure(self) -> bool:
        state = self.sample_memory()
        return state.pressure in (MemoryPressure.HIGH, MemoryPressure.CRITICAL)

    def _log_transition(self, state: MemoryState) -> None:
        if state.pressure == self._last_pressure:
            return
        summary = f"heap {state.heap_percent:.1f}%, rss {state.rss / MB:.1f}MB of {self.rss_limit / MB:.0f}MB"
        if state.pressure == MemoryPressure.CRITICAL:
            logger.error(f"Critical memory pressure ({summary})")
        elif state.pressure == MemoryPressure.HIGH:
            logger.warning(f"High memory pressure ({summary})")
        else:
            logger.info(f"Memory pressure {self._last_pressure.value} -> {state.pressure.value} ({summary})")
        self._last_pressure = state.pressure

    # -- reclaim ----------------------------------------------------------

    def maybe_reclaim(self, state: MemoryState) -> ReclaimAction:
        """Run the reclaim tier matching ``state.pressure``; never raises."""
        action = _ACTION_FOR_PRESSURE[state.pressure]
        try:
            if action == ReclaimAction.PREVENTIVE_GC:
                self._collect(1)
            elif action == ReclaimAction.STANDARD_GC:
                self._collect()
                if self.codec is not None:
                    self.codec.clear_cache()
            elif action == ReclaimAction.AGGRESSIVE:
                for _ in range(self.AGGRESSIVE_PASSES):
                    self._collect()
                if self.codec is not None:
                    self.codec.disable_cache()
                    self.codec.set_load_shedding(True)
                    self._schedule_restore()
        except Exception as e:
            logger.error(f"Memory reclaim ({action.value}) failed: {e}")
        self.last_action = action
        return action

    def _schedule_restore(self) -> None:
        self._restore_deadline = time.monotonic() + self.cooldown
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._restore_handle is not None:
            self._restore_handle.cancel()
        self._restore_handle = loop.call_later(self.cooldown, self.restore_codec)

    def restore_codec(self) -> None:
        self._restore_deadline = None
        self._restore_handle = None
        if self.codec is None:
            return
        try:
            self.codec.enable_cache()
            self.codec.set_load_shedding(False)
            logger.info("Codec cache restored after critical memory cooldown")
        except Exception as e:
            logger.error(f"Failed to restore codec cache: {e}")

    def check_once(self) -> ReclaimAction:
        state = self.sample_memory()
        if (
            self._restore_deadline is not None
            and state.pressure != MemoryPressure.CRITICAL
            and time.monotonic() >= self._restore_deadline
        ):
            self.restore_codec()
        return self.maybe_reclaim(state)

    async def emergency_cleanup(self, reason: str = "") -> None:
        """Drop the codec cache and run repeated collections before heavy work."""
        logger.warning(f"Performing emergency memory cleanup{f' ({reason})' if reason else ''}")
        before = self.sampler.sample()
        try:
            if self.codec is not None:
                self.codec.disable_cache()
            for _ in range(self.EMERGENCY_PASSES):
                self._collect()
                await asyncio.sleep(0)
        except Exception as e:
            logger.error(f"Emergency memory cleanup failed: {e}")
        finally:
            if self.codec is not None and self._restore_deadline is None:
                try:
                    self.codec.enable_cache()
                except Exception as e:
                    logger.warning(f"Failed to restore codec cache: {e}")
        after = self.sampler.sample()
        logger.info(f"Emergency cleanup completed: rss reduced by {(before.rss - after.rss) / MB:.1f}MB")

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Memory monitoring started (interval {self.interval}s, limit {self.rss_limit / MB:.0f}MB)")

    async def stop(self) -> None:
        if self._restore_handle is not None:
            self._restore_handle.cancel()
            self.restore_codec()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Memory monitoring stopped")

    async def _run(self) -> None:
        while True:
            try:
                self.check_once()
            except Exception:
                logger.exception("Memory check failed")
            await asyncio.sleep(self.interval)

    def stats(self) -> dict:
        state = self.last_state or self.sample_memory()
        return {
            **state.to_dict(),
            "last_action": self.last_action.value,
            "monitoring": self._task is not None,
            "cache_restore_pending": self._restore_deadline is not None,
        }
