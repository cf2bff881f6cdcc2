"""
Transport and silence-policy enumerations.

Rules:
- These enums select behavior; they do not encode it.
- The controller decides how each value is honored.
"""

from __future__ import annotations

from enum import Enum


class Transport(str, Enum):
    """
    How audio reaches the provider.

    AUTO:       persistent stream when the provider advertises one, else HTTP
    WEBSOCKET:  persistent stream, frames forwarded as they arrive
    HTTP:       frames aggregated into chunks and transcribed per chunk
    """

    AUTO = "auto"
    WEBSOCKET = "websocket"
    HTTP = "http"


class SilencePolicy(str, Enum):
    """
    What a persistent stream receives while upstream VAD reports silence.

    KEEP:  every frame
    DROP:  only frames captured during speech
    MUTE:  every frame, zeroed during silence (keeps provider clocks aligned)
    """

    KEEP = "keep"
    DROP = "drop"
    MUTE = "mute"
