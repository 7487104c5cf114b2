"""Runtime module for miner subprocess management and output routing.

This module provides isolated process execution with proper signal handling,
reliable termination and the console/file output sinks.
"""

from __future__ import annotations

from .process_runner import ProcessRunner, ProcessSpec
from .sinks import ConsoleSink, FileSink, OutputSink

__all__ = [
    "ConsoleSink",
    "FileSink",
    "OutputSink",
    "ProcessRunner",
    "ProcessSpec",
]
