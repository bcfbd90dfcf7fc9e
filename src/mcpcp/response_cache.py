from __future__ import annotations
import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional
from src.utils.logger import get_logger


@dataclass(frozen=True)
class CacheEntry:
    compressed_text: str
    compressed_tokens: int
    strategy: str
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class ResponseCache:
    """In-memory TTL cache for compressed responses. Single process only."""

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.logger = logger or get_logger("ResponseCache")

    @staticmethod
    def make_key(text: str, target_tokens: int, goal: Optional[str] = None) -> str:
        """SHA-256 over the normalised text, the token budget and the goal."""
        normalised = text.replace("\r\n", "\n").strip()
        digest = hashlib.sha256()
        digest.update(normalised.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(str(target_tokens).encode("ascii"))
        digest.update(b"\x00")
        digest.update((goal or "").encode("utf-8"))
        return digest.hexdigest()

    def get(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry

    def set(
        self,
        key: str,
        compressed_text: str,
        compressed_tokens: int,
        strategy: str,
        ttl: Optional[float] = None,
    ) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        entry = CacheEntry(
            compressed_text=compressed_text,
            compressed_tokens=compressed_tokens,
            strategy=strategy,
            created_at=self._clock(),
            ttl=ttl,
        )
        with self._lock:
            # Re-insert so dict order tracks recency of writes.
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = entry

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.debug(f"🧹 Response cache evicted {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
