"""Orbit: orchestration core for long-lived, independently addressable agents.

Buffers log records emitted before the host process configures logging;
see orbit.logs.configure_logging().
"""

from orbit.logs import install_buffer

install_buffer()

__version__ = "0.1.0"
