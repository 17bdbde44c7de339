"""Result dataclasses returned by VM operations."""

from __future__ import annotations

from dataclasses import dataclass

# Result statuses for start/stop style operations.
STARTED = 'started'
ALREADY_RUNNING = 'already_running'
STOPPED = 'stopped'
NOT_RUNNING = 'not_running'
RESIZED = 'resized'
DELETED = 'deleted'
FAILED = 'failed'


@dataclass(frozen=True)
class OpResult:
    status: str
    message: str
    level: str = 'INFO'
    pid: int | None = None
    ready: bool | None = None

    @property
    def ok(self) -> bool:
        return self.level != 'ERROR'
