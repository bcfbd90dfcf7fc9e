from __future__ import annotations
import threading
import time
from typing import Callable, Optional
from src.mcpcp.constants import DEFAULT_RETRY_CLEANUP_WINDOW_SECONDS
from src.mcpcp.policy import RetryEscalation
from src.utils.logger import get_logger


class RetryTracker:
    """
    Tracks recent calls per tool to scale the compression budget on retries.

    A caller re-invoking the same tool inside the escalation window usually
    means the previous compressed answer lost something it needed, so each
    extra call in the window adds one ``token_multiplier - 1`` increment:
    with a multiplier of 2 the second call gets 2x, the third 3x, and so on.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, logger=None):
        self._clock = clock
        self._calls: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self.logger = logger or get_logger("RetryTracker")

    def record_call(self, tool_name: str) -> None:
        now = self._clock()
        with self._lock:
            self._calls.setdefault(tool_name, []).append(now)

    def get_escalation_multiplier(
        self, tool_name: str, escalation: Optional[RetryEscalation]
    ) -> float:
        if escalation is None or not escalation.enabled:
            return 1.0

        cutoff = self._clock() - escalation.window_seconds
        with self._lock:
            timestamps = self._calls.get(tool_name)
            if not timestamps:
                return 1.0
            recent = [t for t in timestamps if t > cutoff]
            if recent:
                self._calls[tool_name] = recent
            else:
                del self._calls[tool_name]
            count = len(recent)

        if count <= 1:
            return 1.0
        multiplier = 1 + (escalation.token_multiplier - 1) * (count - 1)
        self.logger.debug(
            f"🔁 {tool_name} called {count}x within {escalation.window_seconds}s, "
            f"budget multiplier {multiplier:g}"
        )
        return multiplier

    def cleanup(self, max_window_seconds: float = DEFAULT_RETRY_CLEANUP_WINDOW_SECONDS) -> int:
        """Drop timestamps older than the widest window. Returns the number of tools removed."""
        cutoff = self._clock() - max_window_seconds
        removed = 0
        with self._lock:
            for tool_name in list(self._calls):
                recent = [t for t in self._calls[tool_name] if t > cutoff]
                if recent:
                    self._calls[tool_name] = recent
                else:
                    del self._calls[tool_name]
                    removed += 1
        if removed:
            self.logger.debug(f"🧹 Retry tracker dropped {removed} idle tool(s)")
        return removed

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()

    def get_stats(self) -> dict[str, int]:
        """Number of retained timestamps per tool."""
        with self._lock:
            return {name: len(ts) for name, ts in self._calls.items()}
