"""
Optimistic local writes that take precedence over server echoes

A local write is held for ``grace_period`` seconds. Incoming authoritative
data that disagrees with it inside that window is ignored for that field; an
incoming value equal to the local one confirms the write and clears it.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Tuple


@dataclass
class PendingOverride:
    value: Any
    written_at: float


class PendingOverrides:
    """Last-writer-wins table with a TTL per (token, field)"""

    def __init__(self, grace_period: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.grace_period = grace_period
        self.clock = clock
        self._pending: Dict[Tuple[str, str], PendingOverride] = {}

    def set(self, token_id: str, field: str, value: Any) -> None:
        self._pending[(token_id, field)] = PendingOverride(value, self.clock())

    def get(self, token_id: str, field: str) -> Any:
        self._expire()
        entry = self._pending.get((token_id, field))
        return entry.value if entry else None

    def clear(self, token_id: str) -> None:
        for key in [k for k in self._pending if k[0] == token_id]:
            del self._pending[key]

    def _expire(self) -> None:
        cutoff = self.clock() - self.grace_period
        for key in [k for k, v in self._pending.items() if v.written_at <= cutoff]:
            del self._pending[key]

    def apply(self, token_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge pending overrides into incoming server data

        Returns:
            A new dict; ``data`` is not modified
        """
        self._expire()
        result = dict(data)
        for (token, field), entry in list(self._pending.items()):
            if token != token_id:
                continue
            if field in data and data[field] == entry.value:
                del self._pending[(token, field)]
                continue
            result[field] = entry.value
        return result

    def __len__(self) -> int:
        self._expire()
        return len(self._pending)
