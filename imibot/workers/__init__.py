"""Background workers that run outside request handling."""

from imibot.workers.monitor import BackgroundWorkerMonitor

__all__ = ["BackgroundWorkerMonitor"]
