"""
Sliding-window submission limiter backed by Redis sorted sets.

Each provider gets a sorted set keyed by `ratelimit:submit:{provider}`.
Members are timestamps of recent submissions; the score is the timestamp.
We trim entries older than the window and count the remainder, so the
worker never floods D-ID or Runway with create calls.

When a provider answers 429 with a Retry-After, `start_cooldown` parks the
provider under `ratelimit:cooldown:{provider}` and every submission is
refused until that key expires, whatever the window says.
"""

import time
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 20     # submissions per window, per provider
DEFAULT_WINDOW_SECONDS = 60
MAX_COOLDOWN_SECONDS = 600


def rate_limit_key(provider: str) -> str:
    return f"ratelimit:submit:{provider}"


def cooldown_key(provider: str) -> str:
    return f"ratelimit:cooldown:{provider}"


def parse_retry_after(value) -> Optional[int]:
    """Seconds from a Retry-After header (delta-seconds form only), capped."""
    if value is None:
        return None
    try:
        seconds = int(float(str(value).strip()))
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return min(seconds, MAX_COOLDOWN_SECONDS)


def start_cooldown(redis_client, provider: str, seconds: int):
    """Refuse submissions to ``provider`` for ``seconds``."""
    seconds = min(int(seconds), MAX_COOLDOWN_SECONDS)
    redis_client.set(cooldown_key(provider), "1", ex=seconds)
    logger.warning(f"{provider} asked us to back off, pausing submissions for {seconds}s")


def check_rate_limit(
    redis_client,
    provider: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Tuple[bool, int, int]:
    """
    Check and record a submission for the given provider.

    Returns:
        (allowed, remaining, retry_after_seconds)
        - allowed: True if the submission is within limits
        - remaining: submissions left in this window
        - retry_after: seconds until a submission may go through (0 if allowed)
    """
    now = time.time()
    window_start = now - window_seconds
    key = rate_limit_key(provider)

    pipe = redis_client.pipeline(transaction=True)
    pipe.zremrangebyscore(key, 0, window_start)
    pipe.zcard(key)
    pipe.zrange(key, 0, 0, withscores=True)
    pipe.ttl(cooldown_key(provider))

    _, current_count, oldest_entries, cooldown_ttl = pipe.execute()

    if cooldown_ttl and cooldown_ttl > 0:
        logger.warning(f"Submission refused, {provider} cooling down for {cooldown_ttl}s")
        return False, 0, int(cooldown_ttl)

    if current_count >= max_requests:
        if oldest_entries:
            oldest_score = oldest_entries[0][1]
            retry_after = int(oldest_score + window_seconds - now) + 1
        else:
            retry_after = window_seconds
        logger.warning(f"Submission rate limit hit for {provider}: {current_count}/{max_requests}")
        return False, 0, retry_after

    pipe2 = redis_client.pipeline(transaction=True)
    pipe2.zadd(key, {f"{now}": now})
    pipe2.expire(key, window_seconds + 60)
    pipe2.execute()

    remaining = max_requests - current_count - 1
    logger.info(f"Submission rate OK for {provider}: {current_count + 1}/{max_requests} ({remaining} remaining)")
    return True, remaining, 0
