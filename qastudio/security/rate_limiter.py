"""Rate limiting for abuse-sensitive operations.

Provides:
- Sliding-window limits in Redis, shared by every app instance
- In-memory fallback for development when Redis is not configured
- Preset rules for login, password reset, SMS and config endpoints
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from redis.exceptions import RedisError

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimitExceededError(Exception):
    """Raised when a key has used up its window."""

    def __init__(self, key: str, reset_at: datetime):
        self.key = key
        self.reset_at = reset_at
        super().__init__(f"Rate limit exceeded. Try again after {reset_at.isoformat()}")

    @property
    def retry_after(self) -> int:
        """Whole seconds until the window frees up (for a Retry-After header)."""
        delta = (self.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(delta + 0.999))


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    @property
    def retry_after(self) -> float:
        """Seconds until the window frees up (0 if allowed)."""
        if self.allowed:
            return 0.0
        return max(0.0, (self.reset_at - datetime.now(timezone.utc)).total_seconds())


@dataclass(frozen=True)
class RateLimitRule:
    """A named limit applied per subject (user, IP, team)."""

    name: str
    limit: int
    window_seconds: int

    def key_for(self, subject: str) -> str:
        return f"{self.name}:{subject}"


LOGIN = RateLimitRule("login", limit=5, window_seconds=900)
PASSWORD_RESET = RateLimitRule("password_reset", limit=3, window_seconds=3600)
SMS_SEND = RateLimitRule("twilio_sms", limit=10, window_seconds=60)
CONFIG_READ = RateLimitRule("config", limit=60, window_seconds=60)


def _to_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


class WindowStore(Protocol):
    """Counter backend for the rate limiter."""

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        ...


# Sliding window over a sorted set of request timestamps (ms).
# Runs atomically inside Redis, so concurrent instances see one count.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
    redis.call('ZADD', key, now, member)
    count = count + 1
    allowed = 1
end
redis.call('PEXPIRE', key, window)

local reset = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
    reset = tonumber(oldest[2]) + window
end
return {allowed, count, reset}
"""


class RedisWindowStore:
    """Sliding-window counters in Redis.

    Usage:
        store = RedisWindowStore(redis.Redis.from_url(settings.redis_url))
        limiter = RateLimiter(store=store)
    """

    def __init__(self, client: Any, clock: Clock = time.time):
        """Initialize Redis store.

        Args:
            client: redis.Redis client
            clock: Time source in epoch seconds
        """
        self.client = client
        self._clock = clock
        self._script = client.register_script(SLIDING_WINDOW_SCRIPT)

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Record a request and count the window.

        Raises:
            RedisError: If Redis is unreachable
        """
        now_ms = int(self._clock() * 1000)
        allowed, count, reset_ms = self._script(
            keys=[key],
            args=[now_ms, window_seconds * 1000, limit, f"{now_ms}-{uuid.uuid4().hex}"],
        )
        allowed = bool(int(allowed))
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - int(count)) if allowed else 0,
            reset_at=_to_datetime(int(reset_ms) / 1000),
        )


@dataclass
class WindowCounter:
    """In-memory counter for one key."""

    count: int
    reset_at: float


class MemoryWindowStore:
    """In-process counters for development and tests.

    NOT suitable for production:
    - Not shared: every process (and every app instance) counts separately
    - Not persistent: counters reset on restart

    Each key's window starts on its first request and is reset on the first
    request after it ends. Expired counters are dropped at most once per
    ``sweep_interval`` seconds, on a request, so one-off keys (per-IP) do
    not accumulate.
    """

    def __init__(self, clock: Clock = time.time, sweep_interval: float = 60.0):
        self._clock = clock
        self._counters: dict[str, WindowCounter] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = 0.0

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            counter = self._counters.get(key)

            if counter is None or now >= counter.reset_at:
                counter = WindowCounter(count=1, reset_at=now + window_seconds)
                self._counters[key] = counter
                return RateLimitResult(True, limit, limit - 1, _to_datetime(counter.reset_at))

            if counter.count >= limit:
                return RateLimitResult(False, limit, 0, _to_datetime(counter.reset_at))

            counter.count += 1
            return RateLimitResult(
                True, limit, limit - counter.count, _to_datetime(counter.reset_at)
            )

    def _sweep(self, now: float) -> None:
        expired = [key for key, counter in self._counters.items() if now >= counter.reset_at]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + self._sweep_interval

    def reset(self, key: Optional[str] = None) -> None:
        """Clear one key, or every key."""
        with self._lock:
            if key is None:
                self._counters.clear()
            else:
                self._counters.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class RateLimiter:
    """Keyed rate limiter with a shared store and an in-process fallback.

    Usage:
        limiter = RateLimiter.from_settings(settings)
        limiter.enforce(f"login:{email}", limit=5, window_seconds=900)
    """

    def __init__(
        self,
        store: Optional[WindowStore] = None,
        fallback: Optional[MemoryWindowStore] = None,
        prefix: str = "ratelimit",
    ):
        """Initialize rate limiter.

        Args:
            store: Shared store (Redis). None uses the in-memory fallback only.
            fallback: In-memory store used when the shared store is missing or down
            prefix: Prefix for every counter key
        """
        self.store = store
        self.fallback = fallback or MemoryWindowStore()
        self.prefix = prefix
        self._warned_fallback = False

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        client: Optional[Any] = None,
        prefix: str = "ratelimit",
    ) -> "RateLimiter":
        """Create a limiter backed by Redis when REDIS_URL is configured."""
        if client is None and settings.redis_url:
            from ..cache import create_redis_client

            client = create_redis_client(settings)
        store = RedisWindowStore(client) if client is not None else None
        return cls(store=store, prefix=prefix)

    def check_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count a request against a key.

        Args:
            key: Operation and subject (e.g. "login:user@example.com")
            limit: Max requests per window
            window_seconds: Window length

        Returns:
            Result with remaining requests and reset time
        """
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")

        full_key = f"{self.prefix}:{key}"

        if self.store is not None:
            try:
                return self.store.hit(full_key, limit, window_seconds)
            except RedisError as e:
                logger.error(f"[RateLimit] Redis unavailable, using in-memory fallback: {e}")

        self._warn_fallback()
        return self.fallback.hit(full_key, limit, window_seconds)

    def enforce(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count a request and raise if the key is over its limit.

        Raises:
            RateLimitExceededError: If the limit is exceeded
        """
        result = self.check_limit(key, limit, window_seconds)
        if not result.allowed:
            logger.warning(f"[RateLimit] Exceeded for {key} until {result.reset_at.isoformat()}")
            raise RateLimitExceededError(key, result.reset_at)
        return result

    def enforce_rule(self, rule: RateLimitRule, subject: str) -> RateLimitResult:
        """Apply a preset rule to a subject."""
        return self.enforce(rule.key_for(subject), rule.limit, rule.window_seconds)

    @property
    def is_shared(self) -> bool:
        """Whether counts are shared across instances."""
        return self.store is not None

    def _warn_fallback(self) -> None:
        if self._warned_fallback:
            return
        self._warned_fallback = True
        logger.warning(
            "[RateLimit] Using in-memory fallback (NOT production-safe): counts are not "
            "shared across processes or instances. Configure REDIS_URL for production."
        )
