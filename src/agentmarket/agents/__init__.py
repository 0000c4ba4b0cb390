"""Simulated agents: workers and their executors."""

from .executors import BaseExecutor, register_executor, get_executor
from .worker import AgentWorker

__all__ = ["AgentWorker", "BaseExecutor", "get_executor", "register_executor"]
