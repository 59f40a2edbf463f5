"""
Events emitted by the sync core.

Background tasks never call into display code directly. They put immutable
event objects on an EventQueue; the display side drains the queue on its own
thread (see mailsync.ui.event_bridge).
"""
import queue
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union


class SyncState(Enum):
    """Per-account task state."""
    IDLE = "Idle"
    AUTHENTICATING = "Authenticating"
    LISTING = "Listing"
    SYNCING_MAILBOX = "SyncingMailbox"
    FAILED = "Failed"


@dataclass(slots=True, frozen=True)
class MailboxListChanged:
    account: str


@dataclass(slots=True, frozen=True)
class MailboxIndexChanged:
    account: str
    mailbox: str


@dataclass(slots=True, frozen=True)
class MailboxSyncComplete:
    account: str
    mailbox: str


@dataclass(slots=True, frozen=True)
class SyncFailed:
    """A background task failed. ``mailbox`` is set when only one mailbox was affected."""
    account: str
    error: Exception
    mailbox: Optional[str] = None


@dataclass(slots=True, frozen=True)
class SyncStateChanged:
    """
    The account task moved to a new state.

    ``mailbox`` accompanies SYNCING_MAILBOX; ``error`` accompanies FAILED.
    """
    account: str
    state: SyncState
    mailbox: Optional[str] = None
    error: Optional[Exception] = None


Event = Union[MailboxListChanged, MailboxIndexChanged, MailboxSyncComplete, SyncFailed, SyncStateChanged]


class EventQueue:
    """Thread-safe, unbounded event queue. ``emit`` never blocks."""

    def __init__(self):
        self._queue: "queue.Queue[Event]" = queue.Queue()

    def emit(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Take the next event.

        Args:
            timeout: Seconds to wait; None waits forever, 0 does not wait.

        Returns:
            The event, or None if none arrived in time.
        """
        try:
            if timeout == 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, max_events: Optional[int] = None) -> List[Event]:
        """Take every queued event (at most ``max_events``) without blocking."""
        events: List[Event] = []
        while max_events is None or len(events) < max_events:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def empty(self) -> bool:
        return self._queue.empty()
