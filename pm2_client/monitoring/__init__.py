"""
Monitoring components for the PM2 client agent.
"""
from pm2_client.monitoring.models import (
    UNAVAILABLE,
    ProcessStatus,
    ProcessSummary,
    StaticInfo,
    DynamicInfo,
    MemoryInfo,
    TelemetrySnapshot,
)
from pm2_client.monitoring.system_monitor import SystemMonitor

__all__ = [
    'UNAVAILABLE',
    'ProcessStatus',
    'ProcessSummary',
    'StaticInfo',
    'DynamicInfo',
    'MemoryInfo',
    'TelemetrySnapshot',
    'SystemMonitor'
]
