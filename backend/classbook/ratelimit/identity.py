from typing import Mapping, Optional


def client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    """
    Resolve the caller's address for per-IP buckets.

    First hop of X-Forwarded-For, then X-Real-IP, then the socket peer.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer_host or "unknown"
