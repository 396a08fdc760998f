import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class PipelineEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    component: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for pipeline observability."""

    def __init__(self):
        self._subscribers: List[Callable[[PipelineEvent], None]] = []

    def subscribe(self, callback: Callable[[PipelineEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[PipelineEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event_type: str, component: str, payload: Dict[str, Any]) -> PipelineEvent:
        """Construct and broadcast a PipelineEvent to all subscribers."""
        event = PipelineEvent(
            event_type=event_type,
            component=component,
            payload=payload,
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber (like a bad file write) must not stop a run
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")

        return event
