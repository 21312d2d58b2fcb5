"""
Background Jobs

Scheduled maintenance for conversation integrity.
"""

from src.jobs.conversation_health import (
    ChatOutcome,
    ConversationHealthSweep,
    ConversationSweepStats,
    run_conversation_health_sweep,
)
from src.jobs.scheduler import (
    ConversationHealthScheduler,
    init_scheduler,
    shutdown_scheduler,
)

__all__ = [
    "ChatOutcome",
    "ConversationHealthSweep",
    "ConversationSweepStats",
    "run_conversation_health_sweep",
    "ConversationHealthScheduler",
    "init_scheduler",
    "shutdown_scheduler",
]
