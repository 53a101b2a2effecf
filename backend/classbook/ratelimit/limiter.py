from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Optional

from redis.exceptions import RedisError

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import RateLimitedException
from .config import BUCKETS
from .metrics import rl_decisions, rl_eval_errors
from .redis_backend import TOKEN_BUCKET_LUA, get_redis
from .token_bucket import Decision

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token-bucket admission control backed by one atomic Redis script per call.

    When Redis cannot be reached the call is allowed: booking stays available
    during a cache outage, and every such decision is logged and counted.
    """

    def __init__(
        self,
        redis_client: Any = None,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or default_settings
        self._redis = redis_client
        self._clock = clock

    @property
    def redis(self) -> Any:
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _namespaced_key(self, key: str) -> str:
        return f"{self.settings.rate_limit_namespace}:rl:{key}"

    def evaluate(
        self,
        key: str,
        cost: int,
        refill_rate_per_second: float,
        capacity: Optional[int] = None,
        *,
        bucket: Optional[str] = None,
    ) -> Decision:
        capacity = capacity if capacity is not None else max(1, math.ceil(refill_rate_per_second * 60))
        bucket = bucket or key.split(":", 1)[0]
        now_ms = int(self._clock() * 1000)
        if refill_rate_per_second > 0:
            ttl_ms = int(max(1.0, (capacity / refill_rate_per_second) * 2) * 1000)
        else:
            ttl_ms = 86_400_000

        try:
            res = self.redis.eval(
                TOKEN_BUCKET_LUA,
                1,
                self._namespaced_key(key),
                capacity,
                refill_rate_per_second,
                cost,
                now_ms,
                ttl_ms,
            )
        except (RedisError, OSError) as exc:
            rl_eval_errors.labels(bucket=bucket).inc()
            logger.warning(
                "Rate limiter store unavailable, allowing request",
                extra={"event": "rate_limit_fail_open", "key": key, "error": str(exc)},
            )
            return Decision(True, 0.0, float(capacity), capacity)

        allowed = bool(int(res[0]))
        remaining = float(res[1])
        retry_after_ms = int(res[2])
        retry_after_s = math.inf if retry_after_ms < 0 else retry_after_ms / 1000.0
        decision = Decision(allowed, 0.0 if allowed else retry_after_s, remaining, capacity)
        rl_decisions.labels(bucket=bucket, action="allow" if allowed else "block").inc()
        return decision

    def consume(
        self,
        key: str,
        cost: int,
        refill_rate_per_second: float,
        capacity: Optional[int] = None,
    ) -> bool:
        """Take ``cost`` tokens from ``key``'s bucket. Returns False when the bucket is short."""
        return self.evaluate(key, cost, refill_rate_per_second, capacity).allowed

    def enforce(self, policy_name: str, identity: str) -> None:
        """Apply a named policy to ``identity``; raise RateLimitedException on denial."""
        if not self.settings.rate_limit_enabled:
            return
        policy = BUCKETS[policy_name]
        decision = self.evaluate(
            f"{policy_name}:{identity}",
            policy.cost,
            policy.refill_rate_per_second,
            policy.capacity,
            bucket=policy_name,
        )
        if decision.allowed:
            return
        retry_after = 60 if math.isinf(decision.retry_after_s) else math.ceil(decision.retry_after_s)
        logger.info(
            "Rate limit exceeded",
            extra={"event": "rate_limited", "policy": policy_name, "identity": identity},
        )
        raise RateLimitedException(
            retry_after_seconds=retry_after,
            details={"policy": policy_name},
        )
