from .runner import Handler, WorkerRunner

__all__ = [
    "Handler",
    "WorkerRunner",
]
