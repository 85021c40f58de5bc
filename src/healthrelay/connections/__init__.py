"""
Connection state and export deadline monitoring.
"""

from healthrelay.connections.monitor import MonitoringStatus, TimeoutMonitor
from healthrelay.connections.registry import ConnectionRegistry

__all__ = ["ConnectionRegistry", "MonitoringStatus", "TimeoutMonitor"]
