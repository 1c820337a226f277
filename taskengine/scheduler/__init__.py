from taskengine.scheduler.core import Scheduler
from taskengine.scheduler.pool import WorkerPool

__all__ = ["Scheduler", "WorkerPool"]
