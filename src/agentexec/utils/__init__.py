from .concurrency import gather_all
from .retry import with_retry
from .task_id import TaskIdGenerator, next_task_id
from .templates import render_string, render_template, render_truthy, render_value

__all__ = [
    "gather_all",
    "with_retry",
    "TaskIdGenerator",
    "next_task_id",
    "render_string",
    "render_template",
    "render_truthy",
    "render_value",
]
