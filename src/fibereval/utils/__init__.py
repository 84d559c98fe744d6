"""Logging and memory utilities"""

from .logger import FiberEvalLogger, ScoreLog, get_logger, log_decision
from .memory_manager import MemoryManager, get_memory_manager

__all__ = [
    "FiberEvalLogger",
    "ScoreLog",
    "get_logger",
    "log_decision",
    "MemoryManager",
    "get_memory_manager",
]
