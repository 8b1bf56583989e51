"""
Monitor module.
Contains the dead-letter queue monitor.
"""

from bountyqueue.monitor.main import DLQMonitor, run

__all__ = ["DLQMonitor", "run"]
