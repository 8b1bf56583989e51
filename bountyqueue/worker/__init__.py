"""
Worker module.
Contains the job worker process and the handler registry.
"""

from bountyqueue.worker.handlers import register_handler

__all__ = ["register_handler"]
