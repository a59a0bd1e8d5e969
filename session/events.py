"""
Session observability: state transitions and errors, fanned out to
subscribers, the standard logger and an optional JSONL sink.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional, Union

from inference.utils import wall_ms
from monitoring.logger import JsonlLogger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateTransition:
    correlation_id: str
    role: str
    previous: str
    current: str
    ts: float = field(default_factory=wall_ms)


@dataclass(frozen=True)
class ErrorReport:
    kind: str
    message: str
    correlation_id: Optional[str] = None
    ts: float = field(default_factory=wall_ms)


SessionEvent = Union[StateTransition, ErrorReport]
Subscriber = Callable[[SessionEvent], None]


def _value(v: object) -> str:
    return v.value if isinstance(v, enum.Enum) else str(v)


class EventBus:
    def __init__(self, sink: Optional[JsonlLogger] = None) -> None:
        self.sink = sink
        self._subscribers: List[Subscriber] = []
        self.history: List[SessionEvent] = []

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def transition(self, correlation_id: str, role: object, previous: object, current: object) -> StateTransition:
        event = StateTransition(correlation_id, _value(role), _value(previous), _value(current))
        self.emit(event)
        return event

    def error(self, kind: str, message: str, correlation_id: Optional[str] = None) -> ErrorReport:
        event = ErrorReport(kind, message, correlation_id)
        self.emit(event)
        return event

    def emit(self, event: SessionEvent) -> None:
        self.history.append(event)
        if isinstance(event, StateTransition):
            logger.info(
                "[%s] %s link: %s -> %s",
                event.correlation_id[:8],
                event.role,
                event.previous,
                event.current,
            )
        else:
            logger.error("[%s] %s: %s", (event.correlation_id or "-")[:8], event.kind, event.message)

        if self.sink is not None:
            self.sink.log({"event": type(event).__name__, **asdict(event)})
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception:
                logger.exception("event subscriber raised")
