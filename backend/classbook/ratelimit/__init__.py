"""Token-bucket rate limiting with a Redis backend."""

from .identity import client_ip
from .limiter import RateLimiter
from .token_bucket import BucketState, Decision, token_bucket_decide

__all__ = [
    "BucketState",
    "Decision",
    "RateLimiter",
    "client_ip",
    "token_bucket_decide",
]
