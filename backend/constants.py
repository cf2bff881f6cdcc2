"""
BEHAVIOURAL CONSTANTS
---------------------
Single source of truth for the tunable defaults of the transcription
delivery pipeline.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Environment overrides are resolved in config.py, never here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

# =============================================================================
# Ingest Audio Format (PCM16, 20ms frames)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 16_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)
AUDIO_FRAME_MS: Final[int] = 20

SUPPORTED_CHANNEL_COUNTS: Final[tuple[int, ...]] = (1, 2)

# =============================================================================
# Binary WebSocket Frame Format
# =============================================================================
# Client → Server (mic audio): 4B seq_num + PCM16 payload (variable length)
C2S_SEQ_NUM_BYTES: Final[int] = 4
C2S_MAX_PCM_BYTES: Final[int] = 64_000  # 1s of 16kHz stereo PCM16

SEQ_NUM_START: Final[int] = 1
SEQ_NUM_MAX: Final[int] = 2**32 - 1  # u32 wraparound

# =============================================================================
# Preconnect Buffer
# =============================================================================

PRECONNECT_BUFFER_DEFAULT_MS: Final[int] = 60
PRECONNECT_BUFFER_SOFT_MAX_MS: Final[int] = 120

# =============================================================================
# Chunked (HTTP) Aggregation
# =============================================================================

CHUNK_INTERVAL_MS: Final[int] = 3_000
CHUNK_MIN_DURATION_MS: Final[int] = 700
CHUNK_OVERLAP_MS: Final[int] = 500
CHUNK_MAX_IN_FLIGHT: Final[int] = 1
CHUNK_TIMEOUT_MS: Final[int] = 10_000

# Segment-only mode: no periodic timer, flushes come from segment ends.
CHUNK_SEGMENT_ONLY_INTERVAL_MS: Final[int] = 0

# =============================================================================
# Connect Retry Policy
# =============================================================================

RETRY_ENABLED: Final[bool] = True
RETRY_MAX_ATTEMPTS: Final[int] = 3
RETRY_BASE_DELAY_MS: Final[int] = 300
RETRY_FACTOR: Final[float] = 2.0
RETRY_MAX_DELAY_MS: Final[int] = 10_000
RETRY_JITTER_RATIO: Final[float] = 0.0

# =============================================================================
# Segment Endpointing
# =============================================================================

FORCE_FLUSH_COOLDOWN_MS: Final[int] = 200

# =============================================================================
# Providers
# =============================================================================

DEEPGRAM_LISTEN_URL: Final[str] = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_DEFAULT_MODEL: Final[str] = "nova-2"
DEEPGRAM_KEEPALIVE_INTERVAL_S: Final[float] = 5.0
DEEPGRAM_CONNECT_TIMEOUT_S: Final[float] = 10.0
DEEPGRAM_MAX_MESSAGE_BYTES: Final[int] = 2**22

OPENAI_DEFAULT_TRANSCRIBE_MODEL: Final[str] = "whisper-1"
OPENAI_CHUNK_FILENAME: Final[str] = "chunk.wav"

# =============================================================================
# Observability
# =============================================================================

LOG_LEVELS: Final[tuple[str, ...]] = ("debug", "info", "warn", "error")
DEFAULT_LOG_LEVEL: Final[str] = "info"

# =============================================================================
# Convenience Bundles
# =============================================================================

@dataclass(frozen=True)
class AudioFormat:
    """
    Immutable bundle describing the ingest PCM format.

    Convenience wrapper for passing format metadata around;
    it is NOT a second source of truth.
    """
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ
    channels: int = AUDIO_CHANNELS
    sample_width_bytes: int = AUDIO_SAMPLE_WIDTH_BYTES
    frame_ms: int = AUDIO_FRAME_MS

    @property
    def samples_per_frame(self) -> int:
        """Interleaved samples in one frame (all channels)."""
        return (self.sample_rate_hz * self.frame_ms) // 1000 * self.channels

    @property
    def bytes_per_frame(self) -> int:
        """Bytes in one frame."""
        return self.samples_per_frame * self.sample_width_bytes

    def to_json(self) -> dict[str, int]:
        return {
            "sample_rate": self.sample_rate_hz,
            "sample_width": self.sample_width_bytes,
            "channels": self.channels,
            "frame_duration_ms": self.frame_ms,
        }


AUDIO_FORMAT_DEFAULT: Final[AudioFormat] = AudioFormat()
