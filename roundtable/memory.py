"""Per-agent private memory: a bounded, importance-ranked buffer."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from roundtable.models import MEMORY_KINDS, MemoryEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10
DEFAULT_MAX_TOKENS = 2000


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


class ShortTermMemory:
    """Bounded buffer that evicts the least important entry, not the oldest.

    After every insert both ``len(entries) <= max_entries`` and
    ``estimated_tokens <= max_tokens`` hold. Ties on importance evict the
    earliest entry.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, max_tokens: int = DEFAULT_MAX_TOKENS) -> None:
        if max_entries < 1 or max_tokens < 1:
            raise ValueError("max_entries and max_tokens must be positive")
        self.max_entries = max_entries
        self.max_tokens = max_tokens
        self._entries: list[MemoryEntry] = []
        self._tokens = 0

    @property
    def entries(self) -> list[MemoryEntry]:
        return list(self._entries)

    @property
    def estimated_tokens(self) -> int:
        return self._tokens

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        content: str,
        importance: float,
        kind: str = "observation",
        timestamp: datetime | None = None,
    ) -> list[MemoryEntry]:
        """Insert an entry and evict until both bounds hold. Returns evicted entries."""
        if kind not in MEMORY_KINDS:
            raise ValueError(f"Unknown memory kind: {kind}")
        entry = MemoryEntry(
            content=content,
            timestamp=timestamp or datetime.now(timezone.utc),
            importance=min(1.0, max(0.0, importance)),
            kind=kind,
        )
        self._entries.append(entry)
        self._tokens += estimate_tokens(content)

        evicted: list[MemoryEntry] = []
        while self._entries and (len(self._entries) > self.max_entries or self._tokens > self.max_tokens):
            # min() returns the first minimum, so ties go to the earliest index
            idx = min(range(len(self._entries)), key=lambda i: self._entries[i].importance)
            dropped = self._entries.pop(idx)
            self._tokens -= estimate_tokens(dropped.content)
            evicted.append(dropped)
        if evicted:
            logger.debug("Evicted %d memory entries", len(evicted))
        return evicted

    def clear(self) -> None:
        self._entries.clear()
        self._tokens = 0


@dataclass
class AgentPrivateContext:
    """State owned by exactly one agent. Never rendered into another agent's prompt."""
    memory: ShortTermMemory = field(default_factory=ShortTermMemory)
    goal: str = ""
    long_term_summaries: list[str] = field(default_factory=list)
