from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping

from src.config import Settings, get_settings
from src.contexts.conversation_integrity.application.types import ViolationKind

DEFAULT_VIOLATION_WEIGHTS: Mapping[ViolationKind, int] = {
    ViolationKind.ORPHANED_TOOL_MESSAGE: 15,
    ViolationKind.MALFORMED_TOOL_CALL_ID: 10,
    ViolationKind.DANGLING_TOOL_RESPONSE: 15,
    ViolationKind.MISSING_TOOL_RESPONSE: 20,
    ViolationKind.DUPLICATE_TOOL_RESPONSE: 10,
    ViolationKind.OUT_OF_ORDER_MESSAGE: 5,
}


@dataclass(frozen=True)
class IntegrityPolicy:
    """Tunable thresholds shared by the healer, recovery and the sweep."""

    violation_weights: Mapping[ViolationKind, int] = field(
        default_factory=lambda: dict(DEFAULT_VIOLATION_WEIGHTS)
    )
    unsafe_deletion_fraction: float = 0.5
    severity_threshold: int = 20
    staleness: timedelta = timedelta(hours=6)
    recovery_context_ttl: timedelta = timedelta(hours=24)
    checkpoint_retention: timedelta = timedelta(days=7)
    aggressive_cleanup_min_idle: timedelta = timedelta(days=7)
    active_conversation_grace: timedelta = timedelta(seconds=300)
    archive_on_recovery: bool = True
    spawn_replacement_chat: bool = True

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> IntegrityPolicy:
        settings = settings or get_settings()
        weights = dict(DEFAULT_VIOLATION_WEIGHTS)
        for key, value in settings.violation_weights.items():
            weights[ViolationKind(key)] = int(value)
        return cls(
            violation_weights=weights,
            unsafe_deletion_fraction=settings.unsafe_deletion_fraction,
            severity_threshold=settings.health_severity_threshold,
            staleness=timedelta(hours=settings.conversation_staleness_hours),
            recovery_context_ttl=timedelta(hours=settings.recovery_context_ttl_hours),
            checkpoint_retention=timedelta(days=settings.checkpoint_retention_days),
            aggressive_cleanup_min_idle=timedelta(days=settings.aggressive_cleanup_min_idle_days),
            active_conversation_grace=timedelta(seconds=settings.active_conversation_grace_seconds),
            archive_on_recovery=settings.archive_on_recovery,
            spawn_replacement_chat=settings.spawn_replacement_chat,
        )

    def weight_for(self, kind: ViolationKind) -> int:
        return int(self.violation_weights.get(kind, DEFAULT_VIOLATION_WEIGHTS[kind]))
