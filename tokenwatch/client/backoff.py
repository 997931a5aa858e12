"""
Reconnect backoff
"""


class BackoffPolicy:
    """Exponential delays: initial, initial*factor, ... capped at maximum"""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, factor: float = 2.0):
        if initial <= 0 or maximum < initial or factor < 1:
            raise ValueError("invalid backoff parameters")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self._current = initial

    def next_delay(self) -> float:
        """Delay to wait now; advances the policy"""
        delay = self._current
        self._current = min(self._current * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = self.initial

    @property
    def current(self) -> float:
        return self._current
