"""
Execution of agent definitions.

The Dispatcher picks one executor per agent kind; every executor shares the
lifecycle in :class:`AgentExecutorBase` (input resolution, caching, output
validation, event emission).
"""

from .base import AgentExecutorBase, ExecutorOptions
from .context import ExecutionContext, UserInfo
from .dispatcher import Dispatcher, execute_agent, executor_class

__all__ = [
    "AgentExecutorBase",
    "ExecutorOptions",
    "ExecutionContext",
    "UserInfo",
    "Dispatcher",
    "execute_agent",
    "executor_class",
]
