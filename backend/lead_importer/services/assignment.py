"""Pick the owning agent for each newly imported lead."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from lead_importer.services.import_types import AssignmentConfig


@dataclass
class AssignmentStats:
    assigned: int = 0
    unassigned: int = 0
    fallbacks: int = 0
    per_user: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict[str, Any]:
        return {
            "assigned": self.assigned,
            "unassigned": self.unassigned,
            "fallbacks": self.fallbacks,
            "per_user": dict(self.per_user),
        }


@dataclass
class AssignmentContext:
    """Per-invocation assignment state, threaded through the commit loop.

    The round-robin cursor lives here and nowhere else: a fresh context
    starts again at the first agent.
    """

    config: AssignmentConfig
    user_map: dict[str, str] = field(default_factory=dict)
    cursor: int = 0
    stats: AssignmentStats = field(default_factory=AssignmentStats)


def _lookup_key(value: Any) -> str:
    return str(value).strip().casefold() if value is not None else ""


def build_assignment_context(config: AssignmentConfig) -> AssignmentContext:
    user_map: dict[str, str] = {}
    if config.mode == "by_column":
        for name, user_id in config.user_map.items():
            if _lookup_key(name):
                user_map[_lookup_key(name)] = user_id
            user_map[_lookup_key(user_id)] = user_id
    return AssignmentContext(config=config, user_map=user_map)


def _column_value(raw_data: dict[str, Any], column: str) -> Any:
    if column in raw_data:
        return raw_data[column]
    wanted = column.strip().casefold()
    for key, value in raw_data.items():
        if key.strip().casefold() == wanted:
            return value
    return None


def assign(context: AssignmentContext, raw_data: dict[str, Any]) -> str | None:
    """Return the user id for one row and record it in the context stats."""
    config = context.config
    user_id: str | None = None
    if config.mode == "single":
        user_id = config.single_user_id
    elif config.mode == "round_robin":
        ids = config.round_robin_user_ids
        user_id = ids[context.cursor % len(ids)]
        context.cursor += 1
    elif config.mode == "by_column":
        value = _lookup_key(_column_value(raw_data, config.assignment_column or ""))
        user_id = context.user_map.get(value) if value else None
        if user_id is None:
            user_id = config.fallback_user_id
            context.stats.fallbacks += 1

    if user_id:
        context.stats.assigned += 1
        context.stats.per_user[user_id] += 1
    else:
        context.stats.unassigned += 1
    return user_id


def validate_assignment_config(payload: dict[str, Any] | None) -> AssignmentConfig:
    """Parse a stored or submitted assignment payload, rejecting incomplete modes."""
    return AssignmentConfig.model_validate(payload or {})
