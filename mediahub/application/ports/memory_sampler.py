from dataclasses import dataclass
from typing import Protocol


@dataclass
class MemorySample:
    heap_used: int
    heap_total: int
    rss: int


class MemorySampler(Protocol):
    def sample(self) -> MemorySample:
        ...
