from dataclasses import dataclass
import math
from typing import Optional, Tuple


@dataclass
class Decision:
    allowed: bool
    retry_after_s: float
    remaining: float
    limit: int


@dataclass
class BucketState:
    tokens: float
    updated_ms: int


def token_bucket_decide(
    now_ms: int,
    state: Optional[BucketState],
    *,
    cost: int,
    refill_rate_per_second: float,
    capacity: int,
) -> Tuple[Optional[BucketState], Decision]:
    """
    Token-bucket pure decision function.

    Mirrors TOKEN_BUCKET_LUA so the algorithm can be exercised without Redis.

    Args:
        now_ms: current wall time in epoch milliseconds
        state: stored bucket for the key, or None if the key is new
        cost: tokens this call wants to take
        refill_rate_per_second: tokens added per elapsed second
        capacity: bucket size; refill never exceeds it

    Returns:
        (state to store, Decision). The returned state is None when the call is
        denied, meaning the stored bucket must not be touched.
    """
    if state is None:
        tokens = float(capacity)
        updated_ms = now_ms
    else:
        tokens = state.tokens
        updated_ms = state.updated_ms

    elapsed_s = max(0, now_ms - updated_ms) / 1000.0
    tokens = min(float(capacity), tokens + elapsed_s * refill_rate_per_second)

    if tokens >= cost:
        tokens -= cost
        return BucketState(tokens=tokens, updated_ms=now_ms), Decision(True, 0.0, tokens, capacity)

    if refill_rate_per_second <= 0:
        retry_after = math.inf
    else:
        retry_after = (cost - tokens) / refill_rate_per_second
    return None, Decision(False, retry_after, tokens, capacity)
