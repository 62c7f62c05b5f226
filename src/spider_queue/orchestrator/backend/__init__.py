"""Worker process backends."""

from spider_queue.orchestrator.backend.process import build_worker_argv, terminate_process

__all__ = [
    "build_worker_argv",
    "terminate_process",
]
