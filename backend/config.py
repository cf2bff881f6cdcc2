"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object
- Build the controller options from it

Non-responsibilities:
- No orchestration logic
- No protocol constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from adapters.asr.base import BatchOptions
from constants import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE_HZ,
    CHUNK_MAX_IN_FLIGHT,
    CHUNK_MIN_DURATION_MS,
    CHUNK_OVERLAP_MS,
    CHUNK_TIMEOUT_MS,
    DEEPGRAM_DEFAULT_MODEL,
    OPENAI_DEFAULT_TRANSCRIBE_MODEL,
    RETRY_BASE_DELAY_MS,
    RETRY_ENABLED,
    RETRY_FACTOR,
    RETRY_JITTER_RATIO,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
    AudioFormat,
)
from orchestrator.chunking import ChunkingOptions
from orchestrator.controller import TranscriptionOptions
from orchestrator.enums.transport import SilencePolicy, Transport
from orchestrator.retry import RetryConfig


# ------------------------------------------------------------------
# Env parsing helpers (raise ValueError on malformed values)
# ------------------------------------------------------------------

def _env_str(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_float(env: Mapping[str, str], key: str, default: float | None) -> float | None:
    raw = _env_str(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got {raw!r}") from e


def _env_number(env: Mapping[str, str], key: str, default: float) -> float:
    value = _env_float(env, key, default)
    assert value is not None
    return value


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _env_str(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _env_str(env, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{key} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the server and gateway.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    asr_provider: str
    deepgram_api_key: str | None
    deepgram_model: str
    openai_api_key: str | None
    openai_transcribe_model: str
    language: str | None

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    transport: Transport
    flush_on_segment_end: bool
    silence_policy: SilencePolicy
    preconnect_buffer_ms: float | None

    chunk_interval_ms: float | None
    chunk_min_duration_ms: float
    chunk_overlap_ms: float
    chunk_max_in_flight: int
    chunk_timeout_ms: float

    retry_enabled: bool
    retry_max_attempts: int
    retry_base_delay_ms: float
    retry_factor: float
    retry_max_delay_ms: float
    retry_jitter_ratio: float

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    ingest_sample_rate_hz: int
    ingest_channels: int

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env(env: Mapping[str, str] | None = None) -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a variable is present but malformed.
        """
        e = os.environ if env is None else env

        return AppConfig(
            env=_env_str(e, "ENV") or "dev",
            log_level=_env_str(e, "LOG_LEVEL") or "INFO",

            asr_provider=(_env_str(e, "ASR_PROVIDER") or "deepgram").lower(),
            deepgram_api_key=_env_str(e, "DEEPGRAM_API_KEY"),
            deepgram_model=_env_str(e, "DEEPGRAM_MODEL") or DEEPGRAM_DEFAULT_MODEL,
            openai_api_key=_env_str(e, "OPENAI_API_KEY"),
            openai_transcribe_model=(
                _env_str(e, "OPENAI_TRANSCRIBE_MODEL") or OPENAI_DEFAULT_TRANSCRIBE_MODEL
            ),
            language=_env_str(e, "TRANSCRIBE_LANGUAGE"),

            transport=Transport((_env_str(e, "TRANSCRIBE_TRANSPORT") or "auto").lower()),
            flush_on_segment_end=_env_bool(e, "FLUSH_ON_SEGMENT_END", False),
            silence_policy=SilencePolicy((_env_str(e, "SILENCE_POLICY") or "keep").lower()),
            preconnect_buffer_ms=_env_float(e, "PRECONNECT_BUFFER_MS", None),

            chunk_interval_ms=_env_float(e, "CHUNK_INTERVAL_MS", None),
            chunk_min_duration_ms=_env_number(e, "CHUNK_MIN_DURATION_MS", CHUNK_MIN_DURATION_MS),
            chunk_overlap_ms=_env_number(e, "CHUNK_OVERLAP_MS", CHUNK_OVERLAP_MS),
            chunk_max_in_flight=_env_int(e, "CHUNK_MAX_IN_FLIGHT", CHUNK_MAX_IN_FLIGHT),
            chunk_timeout_ms=_env_number(e, "CHUNK_TIMEOUT_MS", CHUNK_TIMEOUT_MS),

            retry_enabled=_env_bool(e, "RETRY_ENABLED", RETRY_ENABLED),
            retry_max_attempts=_env_int(e, "RETRY_MAX_ATTEMPTS", RETRY_MAX_ATTEMPTS),
            retry_base_delay_ms=_env_number(e, "RETRY_BASE_DELAY_MS", RETRY_BASE_DELAY_MS),
            retry_factor=_env_number(e, "RETRY_FACTOR", RETRY_FACTOR),
            retry_max_delay_ms=_env_number(e, "RETRY_MAX_DELAY_MS", RETRY_MAX_DELAY_MS),
            retry_jitter_ratio=_env_number(e, "RETRY_JITTER_RATIO", RETRY_JITTER_RATIO),

            ingest_sample_rate_hz=_env_int(e, "INGEST_SAMPLE_RATE_HZ", AUDIO_SAMPLE_RATE_HZ),
            ingest_channels=_env_int(e, "INGEST_CHANNELS", AUDIO_CHANNELS),

            enable_json_logs=_env_bool(e, "ENABLE_JSON_LOGS", True),
        )

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def ingest_format(self) -> AudioFormat:
        return AudioFormat(
            sample_rate_hz=self.ingest_sample_rate_hz,
            channels=self.ingest_channels,
        )

    def transcription_options(self) -> TranscriptionOptions:
        return TranscriptionOptions(
            transport=self.transport,
            flush_on_segment_end=self.flush_on_segment_end,
            preconnect_buffer_ms=self.preconnect_buffer_ms,
            silence_policy=self.silence_policy,
            chunking=ChunkingOptions(
                interval_ms=self.chunk_interval_ms,
                min_duration_ms=self.chunk_min_duration_ms,
                overlap_ms=self.chunk_overlap_ms,
                max_in_flight=self.chunk_max_in_flight,
                timeout_ms=self.chunk_timeout_ms,
            ),
            retry=RetryConfig(
                enabled=self.retry_enabled,
                max_attempts=self.retry_max_attempts,
                base_delay_ms=self.retry_base_delay_ms,
                factor=self.retry_factor,
                max_delay_ms=self.retry_max_delay_ms,
                jitter_ratio=self.retry_jitter_ratio,
            ),
            batch=BatchOptions(language=self.language),
        )
