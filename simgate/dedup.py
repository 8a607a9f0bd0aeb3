import hashlib
import time
from typing import Callable

DEDUP_WINDOW = 30 * 60
SWEEP_THRESHOLD = 100


def fingerprint(sender: str, recipient: str, content: str) -> str:
    return hashlib.md5(f"{sender}|{recipient}|{content}".encode()).hexdigest()


class DeduplicationWindow:
    """
    Recently seen (sender, recipient, content) triples.
    Upstream delivers the same SMS more than once and gives it no id,
    so content is the identity. Entries are swept only once the map
    grows past sweep_threshold.
    """

    def __init__(
        self,
        window: float = DEDUP_WINDOW,
        sweep_threshold: int = SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.sweep_threshold = sweep_threshold
        self.clock = clock
        self.seen: dict[str, float] = {}

    def is_duplicate(self, sender: str, recipient: str, content: str) -> bool:
        """Records the triple as seen now, whatever the answer"""
        now = self.clock()
        key = fingerprint(sender, recipient, content)
        last_seen = self.seen.get(key)
        self.seen[key] = now
        if len(self.seen) > self.sweep_threshold:
            self.sweep(now)
        return last_seen is not None and now - last_seen < self.window

    def sweep(self, now: float) -> None:
        for key in [key for key, ts in self.seen.items() if now - ts >= self.window]:
            del self.seen[key]

    def __len__(self) -> int:
        return len(self.seen)
