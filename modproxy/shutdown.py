"""Signals that trigger a clean shutdown."""

from __future__ import annotations

import os
import signal


def get_signals() -> list[signal.Signals]:
    """Return the signals to catch for a clean shutdown on this platform."""
    if os.name == "posix":
        return [signal.SIGINT, signal.SIGTERM]
    return [signal.SIGINT]