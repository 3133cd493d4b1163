"""Background workers for async processing tasks."""

from genqueue.workers.dispatch_worker import run_dispatch_worker

__all__ = ["run_dispatch_worker"]
