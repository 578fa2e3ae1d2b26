"""Rate limiting service using Redis."""
import redis
from datetime import datetime, timezone
from typing import Callable, Tuple


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """Redis-based fixed window rate limiter, one counter per (limiter, client, window)."""

    def __init__(self, redis_client: redis.Redis, clock: Callable[[], datetime] = _utc_now):
        self.redis = redis_client
        self.clock = clock

    def check_rate_limit(
        self,
        key: str,
        limit: int = 600,
        window: int = 60
    ) -> Tuple[bool, int]:
        """
        Check if request is within rate limit.

        Uses fixed window algorithm:
        - Window resets every `window` seconds
        - Allows up to `limit` requests per window

        Args:
            key: Limiter name plus client identifier (e.g. "assignment:10.0.0.1")
            limit: Maximum requests allowed per window
            window: Time window in seconds

        Returns:
            Tuple of (allowed: bool, current_count: int)

        Example:
            >>> limiter = RateLimiter(redis_client)
            >>> allowed, count = limiter.check_rate_limit("events:10.0.0.1", limit=1200, window=60)
            >>> if not allowed:
            >>>     raise HTTPException(429, "Rate limit exceeded")
        """
        window_key = self._get_window_key(key, window)

        current = self.redis.get(window_key)
        if current and int(current) >= limit:
            return False, int(current)

        # Increment counter atomically
        pipe = self.redis.pipeline()
        pipe.incr(window_key)
        pipe.expire(window_key, window)
        results = pipe.execute()

        new_count = results[0]
        return new_count <= limit, new_count

    def _get_window_key(self, key: str, window: int) -> str:
        """Generate Redis key for the current time window."""
        window_id = int(self.clock().timestamp()) // window
        return f"rate_limit:{key}:{window_id}"

    def get_remaining(self, key: str, limit: int = 600, window: int = 60) -> int:
        """Get remaining requests in current window."""
        current = self.redis.get(self._get_window_key(key, window))
        used = int(current) if current else 0
        return max(0, limit - used)

    def reset(self, key: str):
        """Reset rate limit for a key (useful for testing)."""
        for redis_key in self.redis.scan_iter(match=f"rate_limit:{key}:*"):
            self.redis.delete(redis_key)
