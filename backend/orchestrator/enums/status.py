"""
Controller status enumeration.

Rules:
- Observable lifecycle of one transcription controller.
- Transitions are emitted exactly once per change; re-setting the same
  status is a no-op.
"""

from __future__ import annotations

from enum import Enum


class ControllerStatus(str, Enum):
    """
    Lifecycle status of a TranscriptionController.

    IDLE:          constructed, never connected
    CONNECTING:    a connect attempt (or scheduled retry) is underway
    CONNECTED:     transport ready, audio flowing to it
    ERROR:         terminal failure; a new connect() may be issued
    DISCONNECTED:  torn down by disconnect()
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"
