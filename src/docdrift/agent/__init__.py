"""Agent task queue and processors."""
from .processor import TaskProcessor, estimate_cost, execute_task, post_process_verification
from .queue import AgentTaskQueue

__all__ = [
    "AgentTaskQueue",
    "TaskProcessor",
    "estimate_cost",
    "execute_task",
    "post_process_verification",
]
