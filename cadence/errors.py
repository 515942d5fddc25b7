from __future__ import annotations

from typing import Any, Iterable


class SeriesError(Exception):
    """Base exception for all series engine errors."""


class InvalidRuleError(SeriesError):
    """Recurrence rule is malformed or unbounded; raised before any write."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConfigError(SeriesError):
    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class PersistenceError(SeriesError):
    """A write against the event store failed at the given pipeline stage."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        completed_stages: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.completed_stages = tuple(completed_stages)

    def at_stage(self, stage: str, completed_stages: Iterable[str]) -> "PersistenceError":
        self.stage = stage
        self.completed_stages = tuple(completed_stages)
        return self

    def __str__(self) -> str:
        base = super().__str__()
        if not self.stage:
            return base
        done = ", ".join(self.completed_stages) or "none"
        return f"{base} (stage={self.stage}, completed={done})"


class NotFoundError(SeriesError):
    def __init__(self, resource: str, identifier: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")
