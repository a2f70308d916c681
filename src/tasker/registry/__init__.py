"""
Task registry for tasker.

This module provides pipeline execution tracking:
- Stage, task, run and subtask bookkeeping
- Per-host reporter daemon with heartbeat liveness
- Process metric sampling
- Retention cleanup of old metrics
"""

from .storage import RegistryStorage, TaskRun, TaskStatus, ProcessMetricSample, ReporterStatus
from .sampler import ProcessSampler, CpuTimeCache, SampleErrorType, SampleOk, SampleErr
from .heartbeat import HeartbeatProtocol, LivenessStatus, LivenessResult
from .reporter import ReporterDaemon, ReporterSupervisor, stop_reporter
from .cleaner import RetentionCleaner, CleanupStats, RetentionResult
from .lifecycle import TaskTracker

__all__ = [
    # Storage
    'RegistryStorage',
    'TaskRun',
    'TaskStatus',
    'ProcessMetricSample',
    'ReporterStatus',

    # Sampler
    'ProcessSampler',
    'CpuTimeCache',
    'SampleErrorType',
    'SampleOk',
    'SampleErr',

    # Heartbeat
    'HeartbeatProtocol',
    'LivenessStatus',
    'LivenessResult',

    # Reporter
    'ReporterDaemon',
    'ReporterSupervisor',
    'stop_reporter',

    # Cleaner
    'RetentionCleaner',
    'CleanupStats',
    'RetentionResult',

    # Lifecycle
    'TaskTracker',
]
