"""
Connect retry policy.

Purpose:
- Centralize backoff math and retry eligibility
- Allow the controller to make deterministic retry decisions

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Callable

from adapters.asr.errors import is_retryable, retry_after_hint_ms
from constants import (
    RETRY_BASE_DELAY_MS,
    RETRY_ENABLED,
    RETRY_FACTOR,
    RETRY_JITTER_RATIO,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
)


# =============================================================================
# Config
# =============================================================================

@dataclass(frozen=True)
class RetryConfig:
    """
    Immutable retry configuration.

    max_attempts:
        Total connect attempts including the first one. Values below 1
        are treated as 1.

    jitter_ratio:
        0 disables jitter. Otherwise the delay is spread uniformly over
        delay × (1 ± jitter_ratio), then clamped into [0, max_delay_ms].
    """
    enabled: bool = RETRY_ENABLED
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay_ms: float = RETRY_BASE_DELAY_MS
    factor: float = RETRY_FACTOR
    max_delay_ms: float = RETRY_MAX_DELAY_MS
    jitter_ratio: float = RETRY_JITTER_RATIO

    @property
    def attempt_limit(self) -> int:
        return max(1, self.max_attempts)


# =============================================================================
# Policy
# =============================================================================

def should_retry(
    attempt: int,
    config: RetryConfig,
    error: BaseException | None,
) -> bool:
    """
    Returns True if another connect attempt is allowed.

    attempt = number of attempts already made (1 after the first failure)
    """
    if not config.enabled:
        return False
    if not is_retryable(error):
        return False
    return attempt < config.attempt_limit


# =============================================================================
# Delay Calculation
# =============================================================================

def compute_backoff(
    attempt: int,
    config: RetryConfig,
    error: BaseException | None = None,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay in ms before the next attempt.

    - A positive rate-limit retry-after hint wins, capped at max_delay_ms.
    - Otherwise base × factor^(attempt − 1), capped at max_delay_ms.
    - Jitter (if any) is applied last and clamped into [0, max_delay_ms].
    """
    hint = retry_after_hint_ms(error)
    if hint is not None:
        return min(hint, config.max_delay_ms)

    exponent = max(0, attempt - 1)
    try:
        raw = config.base_delay_ms * (config.factor ** exponent)
    except OverflowError:
        raw = math.inf
    delay = min(raw, config.max_delay_ms)

    if config.jitter_ratio <= 0:
        return delay

    spread = delay * config.jitter_ratio
    jittered = math.floor(delay - spread + rand() * 2 * spread)
    return float(min(max(jittered, 0), config.max_delay_ms))
