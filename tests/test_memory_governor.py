import pytest

from mediahub.application.services.memory_governor import (
    MemoryGovernor,
    MemoryPressure,
    ReclaimAction,
    classify,
)


class FakeCodec:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def clear_cache(self):
        if self.fail:
            raise RuntimeError("cache busy")
        self.calls.append("clear")

    def disable_cache(self):
        self.calls.append("disable")

    def enable_cache(self, size_mb=None):
        self.calls.append("enable")

    def set_load_shedding(self, enabled):
        self.calls.append(f"shed:{enabled}")


class CountingCollect:
    def __init__(self):
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        return 0


def make_governor(sampler, codec=None, cooldown=0.0):
    collect = CountingCollect()
    gov = MemoryGovernor(sampler, codec, rss_limit_mb=1000, cooldown=cooldown, collect=collect)
    return gov, collect


def test_classify_thresholds():
    assert classify(10) == MemoryPressure.LOW
    assert classify(60) == MemoryPressure.MEDIUM
    assert classify(74.9) == MemoryPressure.MEDIUM
    assert classify(75) == MemoryPressure.HIGH
    assert classify(90) == MemoryPressure.CRITICAL


def test_reclaim_intensity_is_monotonic_in_pressure(sampler):
    gov, _ = make_governor(sampler, FakeCodec())
    actions = []
    for percent in (50, 65, 80, 95):
        sampler.heap_percent = percent
        actions.append(gov.maybe_reclaim(gov.sample_memory()))
    assert actions == [
        ReclaimAction.NONE,
        ReclaimAction.PREVENTIVE_GC,
        ReclaimAction.STANDARD_GC,
        ReclaimAction.AGGRESSIVE,
    ]
    intensities = [a.intensity for a in actions]
    assert intensities == sorted(intensities)


def test_rss_signal_can_raise_pressure(sampler):
    gov, _ = make_governor(sampler)
    sampler.heap_percent = 10
    sampler.rss_mb = 950
    state = gov.sample_memory()
    assert state.pressure == MemoryPressure.CRITICAL
    assert gov.is_under_pressure()


def test_high_pressure_clears_codec_cache(sampler):
    codec = FakeCodec()
    gov, collect = make_governor(sampler, codec)
    sampler.heap_percent = 80
    gov.check_once()
    assert codec.calls == ["clear"]
    assert len(collect.calls) == 1


def test_critical_disables_cache_and_restores_after_cooldown(sampler):
    codec = FakeCodec()
    gov, collect = make_governor(sampler, codec, cooldown=0.0)
    sampler.heap_percent = 95
    assert gov.check_once() == ReclaimAction.AGGRESSIVE
    assert len(collect.calls) == MemoryGovernor.AGGRESSIVE_PASSES
    assert codec.calls == ["disable", "shed:True"]
    assert gov.stats()["cache_restore_pending"] is True

    sampler.heap_percent = 40
    gov.check_once()
    assert codec.calls[-2:] == ["enable", "shed:False"]
    assert gov.stats()["cache_restore_pending"] is False


def test_restore_waits_while_still_critical(sampler):
    codec = FakeCodec()
    gov, _ = make_governor(sampler, codec, cooldown=0.0)
    sampler.heap_percent = 95
    gov.check_once()
    gov.check_once()
    assert "enable" not in codec.calls


def test_reclaim_failure_is_logged_not_raised(sampler):
    gov, _ = make_governor(sampler, FakeCodec(fail=True))
    sampler.heap_percent = 80
    assert gov.check_once() == ReclaimAction.STANDARD_GC
    assert gov.last_action == ReclaimAction.STANDARD_GC


@pytest.mark.asyncio
async def test_emergency_cleanup_runs_repeated_collections(sampler):
    codec = FakeCodec()
    gov, collect = make_governor(sampler, codec)
    await gov.emergency_cleanup("test")
    assert len(collect.calls) == MemoryGovernor.EMERGENCY_PASSES
    assert codec.calls == ["disable", "enable"]


@pytest.mark.asyncio
async def test_emergency_cleanup_keeps_cache_off_during_cooldown(sampler):
    codec = FakeCodec()
    gov, _ = make_governor(sampler, codec, cooldown=60.0)
    sampler.heap_percent = 95
    gov.check_once()
    await gov.emergency_cleanup("critical upload")
    assert "enable" not in codec.calls
    assert gov.stats()["cache_restore_pending"] is True


@pytest.mark.asyncio
async def test_stop_restores_codec_when_restore_pending(sampler):
    codec = FakeCodec()
    gov, _ = make_governor(sampler, codec, cooldown=60.0)
    sampler.heap_percent = 95
    gov.check_once()
    assert codec.calls == ["disable", "shed:True"]

    await gov.stop()
    assert codec.calls[-2:] == ["enable", "shed:False"]
    assert gov.stats()["cache_restore_pending"] is False


@pytest.mark.asyncio
async def test_start_and_stop_monitoring(sampler):
    gov, _ = make_governor(sampler)
    gov.interval = 0.01
    await gov.start()
    assert gov.stats()["monitoring"] is True
    await gov.stop()
    assert gov.stats()["monitoring"] is False


def test_stats_shape(sampler):
    gov, _ = make_governor(sampler)
    stats = gov.stats()
    assert stats["pressure"] == "low"
    assert stats["limit_mb"] == 1000
    assert "heap" in stats and "percentage" in stats["heap"]
