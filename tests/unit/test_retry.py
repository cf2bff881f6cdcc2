# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from adapters.asr.errors import (
    AuthenticationError,
    NetworkError,
    OperationTimeoutError,
    ProviderError,
    RateLimitError,
    ValidationError,
    is_retryable,
    parse_retry_after_ms,
)
from orchestrator.retry import RetryConfig, compute_backoff, should_retry


# ---------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------

def test_retryable_taxonomy():
    assert is_retryable(NetworkError("down"))
    assert is_retryable(OperationTimeoutError("connect", 1000))
    assert is_retryable(RateLimitError("slow down"))

    assert not is_retryable(AuthenticationError("bad key"))
    assert not is_retryable(ValidationError("bad format"))
    assert not is_retryable(ProviderError("boom", provider_id="x", status=500))
    assert not is_retryable(RuntimeError("unknown"))
    assert not is_retryable(None)


def test_timeout_message_mentions_deadline():
    assert str(OperationTimeoutError("flush", 10_000)) == "flush timed out after 10000ms"
    assert str(OperationTimeoutError("transcribe")) == "transcribe timed out"


def test_parse_retry_after():
    assert parse_retry_after_ms("2") == 2000.0
    assert parse_retry_after_ms(" 0.5 ") == 500.0
    assert parse_retry_after_ms("0") is None
    assert parse_retry_after_ms("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert parse_retry_after_ms(None) is None


# ---------------------------------------------------------------------
# should_retry
# ---------------------------------------------------------------------

def test_should_retry_until_attempt_limit():
    config = RetryConfig(max_attempts=3)
    err = NetworkError("down")

    assert should_retry(1, config, err)
    assert should_retry(2, config, err)
    assert not should_retry(3, config, err)


def test_should_retry_respects_enabled_flag():
    config = RetryConfig(enabled=False)

    assert not should_retry(1, config, NetworkError("down"))


def test_should_retry_never_for_fatal_errors():
    config = RetryConfig(max_attempts=10)

    assert not should_retry(1, config, AuthenticationError("nope"))
    assert not should_retry(1, config, ValidationError("nope"))


def test_max_attempts_below_one_means_single_attempt():
    config = RetryConfig(max_attempts=0)

    assert config.attempt_limit == 1
    assert not should_retry(1, config, NetworkError("down"))


# ---------------------------------------------------------------------
# compute_backoff
# ---------------------------------------------------------------------

def test_exponential_schedule():
    config = RetryConfig(base_delay_ms=300, factor=2.0, max_delay_ms=10_000)

    assert compute_backoff(1, config) == 300
    assert compute_backoff(2, config) == 600
    assert compute_backoff(3, config) == 1200


def test_delay_capped_at_max():
    config = RetryConfig(base_delay_ms=300, factor=2.0, max_delay_ms=1_000)

    assert compute_backoff(10, config) == 1_000


def test_huge_exponent_does_not_overflow():
    config = RetryConfig(base_delay_ms=300, factor=10.0, max_delay_ms=5_000)

    assert compute_backoff(10_000, config) == 5_000


def test_rate_limit_hint_wins():
    config = RetryConfig(base_delay_ms=300, max_delay_ms=10_000)

    assert compute_backoff(1, config, RateLimitError("429", retry_after_ms=2500)) == 2500


def test_rate_limit_hint_capped_at_max():
    config = RetryConfig(max_delay_ms=1_000)

    assert compute_backoff(1, config, RateLimitError("429", retry_after_ms=60_000)) == 1_000


def test_non_positive_hint_falls_back_to_schedule():
    config = RetryConfig(base_delay_ms=300)

    assert compute_backoff(1, config, RateLimitError("429", retry_after_ms=0)) == 300


@pytest.mark.parametrize("rand_value, expected", [(0.0, 150.0), (0.5, 300.0), (0.999, 449.0)])
def test_jitter_spreads_delay(rand_value: float, expected: float):
    config = RetryConfig(base_delay_ms=300, jitter_ratio=0.5)

    assert compute_backoff(1, config, rand=lambda: rand_value) == expected


def test_jitter_clamped_into_range():
    config = RetryConfig(base_delay_ms=1_000, max_delay_ms=1_000, jitter_ratio=2.0)

    assert compute_backoff(1, config, rand=lambda: 0.0) == 0.0
    assert compute_backoff(1, config, rand=lambda: 0.999) == 1_000.0
