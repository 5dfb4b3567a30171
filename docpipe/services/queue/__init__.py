from docpipe.services.queue.backends import (
    InMemoryQueueBackend,
    QueueBackend,
    RedisQueueBackend,
)
from docpipe.services.queue.client import JobQueue, QueueConfig
from docpipe.services.queue.models import (
    BackoffPolicy,
    Job,
    JobStatus,
    QueueMetrics,
    StalledSweep,
    compute_backoff_ms,
)
from docpipe.services.queue.worker import JobContext, JobHandler, WorkerPool

__all__ = [
    "BackoffPolicy",
    "InMemoryQueueBackend",
    "Job",
    "JobContext",
    "JobHandler",
    "JobQueue",
    "JobStatus",
    "QueueBackend",
    "QueueConfig",
    "QueueMetrics",
    "RedisQueueBackend",
    "StalledSweep",
    "WorkerPool",
    "compute_backoff_ms",
]
