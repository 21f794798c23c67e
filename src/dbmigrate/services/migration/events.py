"""Observer interface for progress, error and info notifications.

An ``EventEmitter`` is created by whoever drives a migration and handed to
the adapters and the pipeline, so there is no shared listener state and
tests can subscribe a recorder to assert on what was emitted.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    PROGRESS = "progress"
    ERROR = "error"
    INFO = "info"
    DIAGNOSTIC = "diagnostic"


class MigrationEvent(BaseModel):
    """A single notification emitted during a migration."""
    kind: EventKind
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventCallback = Callable[[MigrationEvent], None]


class EventEmitter:
    """Fan-out of migration events to registered callbacks."""

    def __init__(self) -> None:
        self._listeners: list[tuple[Optional[EventKind], EventCallback]] = []

    def subscribe(self, callback: EventCallback) -> None:
        """Receive every event."""
        self._listeners.append((None, callback))

    def on(self, kind: EventKind | str, callback: EventCallback) -> None:
        """Receive events of one kind only."""
        self._listeners.append((EventKind(kind), callback))

    def unsubscribe(self, callback: EventCallback) -> None:
        """Stop delivering events to ``callback``, however it was registered."""
        self._listeners = [(kind, listener) for kind, listener in self._listeners if listener is not callback]

    def emit(self, event: MigrationEvent) -> None:
        for kind, callback in list(self._listeners):
            if kind is not None and kind != event.kind:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event callback failed: {e}")

    def progress(self, message: str, **data: Any) -> None:
        self.emit(MigrationEvent(kind=EventKind.PROGRESS, message=message, data=data))

    def error(self, message: str, **data: Any) -> None:
        self.emit(MigrationEvent(kind=EventKind.ERROR, message=message, data=data))

    def info(self, message: str, **data: Any) -> None:
        self.emit(MigrationEvent(kind=EventKind.INFO, message=message, data=data))

    def diagnostic(self, message: str, **data: Any) -> None:
        self.emit(MigrationEvent(kind=EventKind.DIAGNOSTIC, message=message, data=data))


class EventRecorder:
    """Callback that keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: list[MigrationEvent] = []

    def __call__(self, event: MigrationEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind | str) -> list[MigrationEvent]:
        kind = EventKind(kind)
        return [event for event in self.events if event.kind == kind]
