"""
Qt bridge for sync core events.

The core's background threads put events on an EventQueue. EventBridge drains
that queue on the thread it lives on (normally the GUI thread, driven by a
QTimer) and re-emits each event as a Qt signal, so receivers never run on a
core thread and never block one.
"""
import logging
from typing import Optional

from PyQt5.QtCore import QObject, QTimer, pyqtSignal

from mailsync.core.events import (
    EventQueue,
    MailboxIndexChanged,
    MailboxListChanged,
    MailboxSyncComplete,
    SyncFailed,
    SyncStateChanged,
)
from mailsync.utils.errors import human_friendly_message


logger = logging.getLogger(__name__)


class EventBridge(QObject):
    """Re-emits core events as Qt signals."""

    mailbox_list_changed = pyqtSignal(str)  # account
    mailbox_index_changed = pyqtSignal(str, str)  # account, mailbox
    mailbox_sync_complete = pyqtSignal(str, str)  # account, mailbox
    sync_failed = pyqtSignal(str, str, str)  # account, mailbox ("" for the whole account), message
    sync_state_changed = pyqtSignal(str, str)  # account, state name

    def __init__(self, events: EventQueue, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.events = events
        self._timer: Optional[QTimer] = None

    def pump(self, max_events: Optional[int] = None) -> int:
        """
        Emit the queued events without blocking.

        Returns:
            The number of events emitted.
        """
        events = self.events.drain(max_events)
        for event in events:
            self._dispatch(event)
        return len(events)

    def _dispatch(self, event) -> None:
        if isinstance(event, MailboxIndexChanged):
            self.mailbox_index_changed.emit(event.account, event.mailbox)
        elif isinstance(event, MailboxSyncComplete):
            self.mailbox_sync_complete.emit(event.account, event.mailbox)
        elif isinstance(event, MailboxListChanged):
            self.mailbox_list_changed.emit(event.account)
        elif isinstance(event, SyncFailed):
            self.sync_failed.emit(event.account, event.mailbox or "", human_friendly_message(event.error))
        elif isinstance(event, SyncStateChanged):
            self.sync_state_changed.emit(event.account, event.state.value)
        else:
            logger.warning(f"Unknown event type: {type(event).__name__}")

    def start(self, interval_ms: int = 100) -> None:
        """Pump the queue periodically from a QTimer."""
        if self._timer is None:
            self._timer = QTimer(self)
            self._timer.timeout.connect(self.pump)
        self._timer.start(interval_ms)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.stop()
