from taskengine.worker.executor import TaskExecutor

__all__ = ["TaskExecutor"]
