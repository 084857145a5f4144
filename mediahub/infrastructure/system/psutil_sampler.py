import psutil

from ...application.ports.memory_sampler import MemorySample, MemorySampler


class PsutilMemorySampler(MemorySampler):
    """Samples system memory (as the heap signal) and this process's RSS."""

    def __init__(self) -> None:
        self._process = psutil.Process()

    def sample(self) -> MemorySample:
        vm = psutil.virtual_memory()
        rss = self._process.memory_info().rss
        return MemorySample(heap_used=vm.total - vm.available, heap_total=vm.total, rss=rss)
