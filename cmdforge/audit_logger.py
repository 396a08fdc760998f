import os

from cmdforge.event_bus import EventBus, PipelineEvent


class AuditLogger:
    """
    Subscribes to an EventBus and writes every event
    to an append-only JSONL file.
    """
    def __init__(self, file_path: str, event_bus: EventBus):
        self.file_path = file_path
        self.event_bus = event_bus

        # Ensure the directory exists
        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)

        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: PipelineEvent) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def close(self) -> None:
        self.event_bus.unsubscribe(self.log_event)
