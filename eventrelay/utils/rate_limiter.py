"""
Sliding-window rate limiter with burst control and IP reputation.

Two backends share one algorithm:
- memory (default): process-local buckets. Each instance enforces its own
  limit, so under N instances the effective aggregate limit is N times the
  configured one.
- redis: the same window/burst bookkeeping over Redis sorted sets, for a
  limit that holds across instances. Redis errors fail open.

Reputation records (per-IP penalty multipliers) are always process-local.
Buckets idle for an hour and reputations idle for a day are evicted by
sweep(), driven by the rate-limit sweeper worker.
"""
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW_MS = 60_000
DEFAULT_BURST_SIZE = 10
DEFAULT_BURST_WINDOW_MS = 1_000
DEFAULT_IP_BASE_LIMIT = 200

BUCKET_IDLE_MS = 60 * 60 * 1000  # 1 hour
REPUTATION_IDLE_MS = 24 * BUCKET_IDLE_MS
REPUTATION_DECAY_MS = 24 * BUCKET_IDLE_MS

PENALTY_STEP = 1.5
MAX_PENALTY = 16.0

BURST_LIMIT_EXCEEDED = "burst_limit_exceeded"
RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _seconds_until(reset_at_ms: int, now_ms: int) -> int:
    """Whole seconds until reset, never less than 1 for a rejection."""
    return max(1, math.ceil((reset_at_ms - now_ms) / 1000))


@dataclass(frozen=True)
class RateLimits:
    max_requests: int = DEFAULT_MAX_REQUESTS
    window_ms: int = DEFAULT_WINDOW_MS
    burst_size: int = DEFAULT_BURST_SIZE
    burst_window_ms: int = DEFAULT_BURST_WINDOW_MS


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch milliseconds
    retry_after: int = 0  # seconds
    reason: Optional[str] = None
    violations: Optional[int] = None
    reputation: Optional[dict] = None


@dataclass
class _Bucket:
    requests: list[int] = field(default_factory=list)
    last_access: int = 0


@dataclass
class IpReputation:
    violations: int = 0
    last_violation: Optional[int] = None
    last_decay: Optional[int] = None
    penalty: float = 1.0
    last_update: int = 0

    @property
    def score(self) -> int:
        return max(0, 100 - self.violations * 10)

    def as_dict(self) -> dict:
        return {
            "score": self.score,
            "penalty": self.penalty,
            "violations": self.violations,
        }


class RateLimiter:
    """Process-local sliding window limiter."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._violations: dict[str, int] = {}

    def check(self, identifier: str, limits: Optional[RateLimits] = None) -> RateLimitResult:
        limits = limits or RateLimits()
        now = self._clock()
        window_start = now - limits.window_ms
        burst_start = now - limits.burst_window_ms

        bucket = self._buckets.get(identifier)
        if bucket is None:
            bucket = self._buckets[identifier] = _Bucket()
        bucket.last_access = now
        bucket.requests = [ts for ts in bucket.requests if ts > window_start]

        # Burst guard runs first so spikes are caught even well under quota
        recent_burst = [ts for ts in bucket.requests if ts > burst_start]
        if len(recent_burst) >= limits.burst_size:
            reset_at = recent_burst[0] + limits.burst_window_ms
            return RateLimitResult(
                allowed=False,
                reason=BURST_LIMIT_EXCEEDED,
                limit=limits.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=_seconds_until(reset_at, now),
            )

        if len(bucket.requests) >= limits.max_requests:
            reset_at = bucket.requests[0] + limits.window_ms
            violations = self._violations.get(identifier, 0) + 1
            self._violations[identifier] = violations
            logger.warning(
                "Rate limit exceeded: key=%s count=%d limit=%d violations=%d",
                identifier, len(bucket.requests), limits.max_requests, violations,
            )
            return RateLimitResult(
                allowed=False,
                reason=RATE_LIMIT_EXCEEDED,
                limit=limits.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=_seconds_until(reset_at, now),
                violations=violations,
            )

        bucket.requests.append(now)
        return RateLimitResult(
            allowed=True,
            limit=limits.max_requests,
            remaining=limits.max_requests - len(bucket.requests),
            reset_at=now + limits.window_ms,
            retry_after=0,
        )

    def get_violation_count(self, identifier: str) -> int:
        return self._violations.get(identifier, 0)

    def reset_violations(self, identifier: str) -> None:
        self._violations.pop(identifier, None)
        self._buckets.pop(identifier, None)

    def sweep(self, now: Optional[int] = None) -> int:
        """Evict buckets idle longer than an hour, with their violation counts. Returns evicted count."""
        now = self._clock() if now is None else now
        stale = [k for k, b in self._buckets.items() if now - b.last_access > BUCKET_IDLE_MS]
        for key in stale:
            del self._buckets[key]
            self._violations.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)


class RedisRateLimiter:
    """
    Shared sliding window over a Redis sorted set per identifier.
    Member = unique admission id, score = admission time in ms.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms, key_prefix: str = "eventrelay:ratelimit"):
        self._clock = clock
        self._key_prefix = key_prefix

    async def check(self, identifier: str, limits: Optional[RateLimits] = None) -> RateLimitResult:
        limits = limits or RateLimits()
        now = self._clock()
        window_start = now - limits.window_ms
        burst_start = now - limits.burst_window_ms
        redis_key = f"{self._key_prefix}:{identifier}"

        try:
            from eventrelay.utils.redis_client import get_redis
            redis = await get_redis()

            pipe = redis.pipeline()
            # Drop admissions at or before the window start
            pipe.zremrangebyscore(redis_key, 0, window_start)
            pipe.zrangebyscore(redis_key, f"({burst_start}", "+inf", start=0, num=1, withscores=True)
            pipe.zcount(redis_key, f"({burst_start}", "+inf")
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.zcard(redis_key)
            results = await pipe.execute()
            oldest_burst, burst_count, oldest, window_count = results[1], results[2], results[3], results[4]

            if burst_count >= limits.burst_size:
                reset_at = int(oldest_burst[0][1]) + limits.burst_window_ms if oldest_burst else now
                return RateLimitResult(
                    allowed=False,
                    reason=BURST_LIMIT_EXCEEDED,
                    limit=limits.max_requests,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=_seconds_until(reset_at, now),
                )

            if window_count >= limits.max_requests:
                reset_at = int(oldest[0][1]) + limits.window_ms if oldest else now + limits.window_ms
                violations_key = f"{self._key_prefix}:violations:{identifier}"
                violations = await redis.incr(violations_key)
                await redis.expire(violations_key, BUCKET_IDLE_MS // 1000)
                logger.warning(
                    "Rate limit exceeded: key=%s count=%d limit=%d violations=%d",
                    identifier, window_count, limits.max_requests, violations,
                )
                return RateLimitResult(
                    allowed=False,
                    reason=RATE_LIMIT_EXCEEDED,
                    limit=limits.max_requests,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=_seconds_until(reset_at, now),
                    violations=violations,
                )

            pipe = redis.pipeline()
            pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.pexpire(redis_key, limits.window_ms + 1000)
            await pipe.execute()

            return RateLimitResult(
                allowed=True,
                limit=limits.max_requests,
                remaining=max(0, limits.max_requests - window_count - 1),
                reset_at=now + limits.window_ms,
                retry_after=0,
            )
        except Exception as e:
            # Redis failure should not block ingestion - allow through
            logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
            return RateLimitResult(
                allowed=True,
                limit=limits.max_requests,
                remaining=limits.max_requests,
                reset_at=now + limits.window_ms,
                retry_after=0,
            )


class IpReputationTracker:
    """
    Per-IP penalty multiplier. Each violation multiplies the penalty by 1.5
    (capped at 16); the caller's effective quota is base_limit / penalty.
    Decay is lazy: a day without violations halves the penalty on the next check.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._records: dict[str, IpReputation] = {}

    def get(self, ip: str) -> Optional[IpReputation]:
        return self._records.get(ip)

    def effective_limit(self, ip: str, base_limit: int) -> tuple[IpReputation, int]:
        now = self._clock()
        reputation = self._records.get(ip)
        if reputation is None:
            reputation = self._records[ip] = IpReputation(last_update=now)
        reputation.last_update = now

        if reputation.last_violation is not None:
            anchor = max(reputation.last_violation, reputation.last_decay or 0)
            if now - anchor > REPUTATION_DECAY_MS:
                reputation.penalty = max(1.0, reputation.penalty / 2)
                reputation.violations = max(0, reputation.violations - 1)
                reputation.last_decay = now

        return reputation, max(1, math.floor(base_limit / reputation.penalty))

    def record_violation(self, ip: str) -> IpReputation:
        now = self._clock()
        reputation = self._records.setdefault(ip, IpReputation(last_update=now))
        reputation.violations += 1
        reputation.last_violation = now
        reputation.penalty = min(MAX_PENALTY, reputation.penalty * PENALTY_STEP)
        logger.info(
            "IP reputation penalty raised: ip=%s penalty=%.2f violations=%d",
            ip, reputation.penalty, reputation.violations,
        )
        return reputation

    def sweep(self, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        stale = [ip for ip, r in self._records.items() if now - r.last_update > REPUTATION_IDLE_MS]
        for ip in stale:
            del self._records[ip]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


_memory_limiter = RateLimiter()
_redis_limiter: Optional[RedisRateLimiter] = None
_reputation_tracker = IpReputationTracker()


def get_rate_limiter() -> RateLimiter:
    return _memory_limiter


def get_reputation_tracker() -> IpReputationTracker:
    return _reputation_tracker


def _use_redis_backend() -> bool:
    from eventrelay.config import get_settings
    return get_settings().rate_limit_backend == "redis"


async def check_rate_limit(identifier: str, limits: Optional[RateLimits] = None) -> RateLimitResult:
    """Check an identifier against the configured backend."""
    global _redis_limiter
    if _use_redis_backend():
        if _redis_limiter is None:
            _redis_limiter = RedisRateLimiter()
        return await _redis_limiter.check(identifier, limits)
    return _memory_limiter.check(identifier, limits)


async def check_ip_reputation(ip: str, base_limit: int = DEFAULT_IP_BASE_LIMIT) -> RateLimitResult:
    """Per-IP check whose quota shrinks as the IP accumulates violations."""
    reputation, adjusted_limit = _reputation_tracker.effective_limit(ip, base_limit)
    result = await check_rate_limit(
        f"ip:{ip}",
        RateLimits(max_requests=adjusted_limit, window_ms=DEFAULT_WINDOW_MS),
    )
    if not result.allowed:
        reputation = _reputation_tracker.record_violation(ip)
    result.reputation = reputation.as_dict()
    return result


def get_violation_count(identifier: str) -> int:
    return _memory_limiter.get_violation_count(identifier)


def reset_violations(identifier: str) -> None:
    _memory_limiter.reset_violations(identifier)


def sweep_rate_limit_state() -> tuple[int, int]:
    """Evict idle buckets and reputations. Returns (buckets, reputations) evicted."""
    return _memory_limiter.sweep(), _reputation_tracker.sweep()


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Standard X-RateLimit-* headers, plus Retry-After when rejected."""
    reset = datetime.fromtimestamp(result.reset_at / 1000, tz=timezone.utc)
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }
    if result.retry_after > 0:
        headers["Retry-After"] = str(result.retry_after)
    return headers
