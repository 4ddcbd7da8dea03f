"""Task execution: queue, type registry, handler context, retry and timeouts.

::

    TaskQueue ──dequeue──▶ TaskExecutor ──validate──▶ TaskTypeRegistry
                                │
                                └──run_with_timeout(handler.run, ExecutionContext)

:class:`~conductor.execution.executor.TaskExecutor` is imported from its
module; it depends on the store.
"""

from conductor.execution.context import ExecutionContext
from conductor.execution.queue import QueueStats, TaskQueue
from conductor.execution.registry import FunctionHandler, RegistryFrozenError, TaskHandler, TaskTypeRegistry
from conductor.execution.retry import ExponentialBackoff, RetryStrategy
from conductor.execution.timeout import run_with_timeout

__all__ = [
    "ExecutionContext",
    "TaskQueue",
    "QueueStats",
    "TaskHandler",
    "FunctionHandler",
    "TaskTypeRegistry",
    "RegistryFrozenError",
    "RetryStrategy",
    "ExponentialBackoff",
    "run_with_timeout",
]
