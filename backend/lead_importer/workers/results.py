"""Typed outcome returned by the parse and commit workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkerOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class WorkerResult:
    outcome: WorkerOutcome
    message: str
    stats: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str, **stats: Any) -> "WorkerResult":
        return cls(WorkerOutcome.SUCCESS, message, stats)

    @classmethod
    def retryable(cls, message: str, **stats: Any) -> "WorkerResult":
        return cls(WorkerOutcome.RETRYABLE, message, stats)

    @classmethod
    def terminal(cls, message: str, **stats: Any) -> "WorkerResult":
        return cls(WorkerOutcome.TERMINAL, message, stats)

    @property
    def http_status(self) -> int:
        """Status code the queue understands: 2xx done, 4xx drop, 5xx redeliver."""
        return {
            WorkerOutcome.SUCCESS: 200,
            WorkerOutcome.TERMINAL: 422,
            WorkerOutcome.RETRYABLE: 503,
        }[self.outcome]

    def as_dict(self) -> dict[str, Any]:
        return {"outcome": self.outcome.value, "message": self.message, "stats": self.stats}
