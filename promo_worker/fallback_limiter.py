"""
In-memory fallback submission limiter and long-poll guard.

Activates when Redis is not configured, providing two safety mechanisms:
  1. Sliding-window submission limiter per provider (thread-safe)
  2. A cap on concurrent cinematic long-polls, each of which holds a
     worker thread for up to a few minutes

Stricter than the Redis-backed limiter because nothing survives a restart.
"""

import time
import threading
from typing import Tuple, Dict, List

# ── Configuration ─────────────────────────────────────────────────────────────
FALLBACK_MAX_REQUESTS = 10       # Lower than the Redis default (20)
FALLBACK_WINDOW_SECONDS = 60
MAX_CONCURRENT_LONG_POLLS = 3

# ── State ─────────────────────────────────────────────────────────────────────
_lock = threading.Lock()
_request_log: Dict[str, List[float]] = {}  # provider → [timestamp, ...]
_cooldowns: Dict[str, float] = {}  # provider → unix time submissions resume
_active_polls = 0


# ── Rate Limiting ─────────────────────────────────────────────────────────────

def check_rate_limit(
    provider: str,
    max_requests: int = FALLBACK_MAX_REQUESTS,
    window_seconds: int = FALLBACK_WINDOW_SECONDS,
) -> Tuple[bool, int, int]:
    """
    In-memory sliding-window limiter.

    Returns:
        (allowed, remaining, retry_after_seconds)

    Same contract as rate_limiter.check_rate_limit() but without Redis.
    """
    now = time.time()
    window_start = now - window_seconds

    with _lock:
        resume_at = _cooldowns.get(provider, 0)
        if resume_at > now:
            return False, 0, int(resume_at - now) + 1

        timestamps = [ts for ts in _request_log.get(provider, []) if ts > window_start]

        if len(timestamps) >= max_requests:
            oldest = timestamps[0]
            retry_after = int(oldest + window_seconds - now) + 1
            _request_log[provider] = timestamps
            return False, 0, retry_after

        timestamps.append(now)
        _request_log[provider] = timestamps
        return True, max_requests - len(timestamps), 0


def start_cooldown(provider: str, seconds: int):
    """Refuse submissions to ``provider`` for ``seconds`` (provider sent Retry-After)."""
    with _lock:
        _cooldowns[provider] = time.time() + seconds


# ── Long-poll Guard ───────────────────────────────────────────────────────────

def acquire_poll_slot(max_slots: int = MAX_CONCURRENT_LONG_POLLS) -> bool:
    """Try to take a long-poll slot. False when at capacity."""
    global _active_polls
    with _lock:
        if _active_polls >= max_slots:
            return False
        _active_polls += 1
        return True


def release_poll_slot():
    global _active_polls
    with _lock:
        _active_polls = max(0, _active_polls - 1)


def get_active_polls() -> int:
    with _lock:
        return _active_polls


# ── Cleanup ───────────────────────────────────────────────────────────────────

def reset():
    """Forget all recorded submissions and slots (used between tests)."""
    global _active_polls
    with _lock:
        _request_log.clear()
        _cooldowns.clear()
        _active_polls = 0


def cleanup_expired(window_seconds: int = FALLBACK_WINDOW_SECONDS):
    """
    Drop entries older than the window.
    Called from the sweeper loop to keep memory flat.
    """
    now = time.time()
    cutoff = now - window_seconds

    with _lock:
        for provider, resume_at in list(_cooldowns.items()):
            if resume_at <= now:
                del _cooldowns[provider]
        for provider in list(_request_log):
            kept = [ts for ts in _request_log[provider] if ts > cutoff]
            if kept:
                _request_log[provider] = kept
            else:
                del _request_log[provider]
