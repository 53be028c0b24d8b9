"""Daemon module for dockwatch.

This module provides the long-running engine process that owns the
batch scheduler and the intent evaluator.
"""

from dockwatch.daemon.pid import PIDFile
from dockwatch.daemon.service import (
    DockwatchDaemon,
    run_daemon,
)

__all__ = [
    "DockwatchDaemon",
    "PIDFile",
    "run_daemon",
]
