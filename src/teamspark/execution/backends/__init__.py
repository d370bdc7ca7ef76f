"""Queue storage backends."""

from teamspark.execution.backends.base import FinishedState, QueueBackend
from teamspark.execution.backends.memory import MemoryBackend
from teamspark.execution.backends.redis import RedisBackend

__all__ = ["FinishedState", "MemoryBackend", "QueueBackend", "RedisBackend"]
