"""
tasker - pipeline execution tracking.

Scripts register stages and tasks, record run lifecycle events and subtask
progress, and a per-host reporter daemon attaches CPU, memory and IO
telemetry to every running task run.
"""

__version__ = "0.3.0"

__all__ = [
    '__version__',
]
