import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window counter of connection attempts per source address."""

    def __init__(self, max_attempts: int = 10, window: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window = window
        self.clock = clock
        self.attempts: Dict[str, Deque[float]] = defaultdict(deque)

    def hit(self, address: str) -> bool:
        """Record an attempt; False once more than max_attempts fall in the window."""
        now = self.clock()
        q = self.attempts[address]
        cutoff = now - self.window
        while q and q[0] <= cutoff:
            q.popleft()
        if len(q) >= self.max_attempts:
            logger.warning(f"🚫 Rate limit exceeded for {address}")
            return False
        q.append(now)
        return True

    def sweep(self) -> int:
        """Forget addresses whose whole window has elapsed; returns how many were dropped."""
        cutoff = self.clock() - self.window
        stale = [address for address, q in self.attempts.items() if not q or q[-1] <= cutoff]
        for address in stale:
            del self.attempts[address]
        if stale:
            logger.debug(f"Swept {len(stale)} rate limit entries")
        return len(stale)
