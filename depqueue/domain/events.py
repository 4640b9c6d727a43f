import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol

if TYPE_CHECKING:
    from depqueue.db.models import Job

logger = logging.getLogger(__name__)

@dataclass
class StateChangeEvent:
    job: "Job"
    old_state: str
    new_state: str

    def set_new_state(self, state: str) -> None:
        self.new_state = state

Listener = Callable[[StateChangeEvent], None]

class EventNotifier(Protocol):
    def notify(self, job: "Job", new_state: str) -> StateChangeEvent:
        ...

class EventDispatcher:
    """
    Synchronous, ordered delivery of state changes to in-process listeners.

    Listeners run in registration order and may override the new state of the
    event; the job manager applies whatever state the event holds afterwards.
    """

    def __init__(self, listeners: list[Listener] | None = None):
        self.listeners: list[Listener] = list(listeners or [])

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def notify(self, job: "Job", new_state: str) -> StateChangeEvent:
        event = StateChangeEvent(job=job, old_state=job.state, new_state=new_state)
        for listener in self.listeners:
            listener(event)
        return event

def log_state_change(event: StateChangeEvent) -> None:
    logger.info(f"Job {event.job.id} ({event.job.command}) changed state {event.old_state} -> {event.new_state}")

def build_notifier() -> EventDispatcher:
    return EventDispatcher([log_state_change])
