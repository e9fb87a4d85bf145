"""
chronoq

Distributed scheduling core: due-job claiming, queue hand-off, execution,
retry/backoff and dead-lettering across cooperating scheduler and worker
processes that share only a job store and a task queue.
"""

__version__ = "0.1.0"
