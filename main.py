"""
Main application entry point.

Runs one headless sync of every configured account: cached mail is
reconciled, each account is mirrored on its own thread and core events are
logged through an EventBridge until all accounts are done.
"""
import logging
import sys

from PyQt5.QtCore import QCoreApplication, QTimer

from mailsync import config
from mailsync.auth.tokens import TokenStore
from mailsync.core.events import EventQueue
from mailsync.core.settings import load_settings
from mailsync.core.store import MailStore
from mailsync.core.sync_manager import SyncManager
from mailsync.ui.event_bridge import EventBridge
from mailsync.utils.logging_cfg import setup_logging


logger = logging.getLogger(__name__)


def main():
    """Main function"""
    # Load environment variables and ensure directories exist
    config.load_env()

    # Setup logging
    log_file = setup_logging(debug=config.LOG_DEBUG)

    settings = load_settings()
    if not settings.accounts:
        print(f"No accounts configured in {config.DATA_DIR / 'settings.json'}", file=sys.stderr)
        return 1

    app = QCoreApplication(sys.argv)
    app.setApplicationName(config.APP_NAME)

    store = MailStore(config.DATA_DIR)
    for email in settings.accounts:
        store.collect_orphans(email)

    events = EventQueue()
    tokens = TokenStore(config.DATA_DIR)
    manager = SyncManager(store, tokens.access_token, events=events, settings=settings)

    bridge = EventBridge(events)
    bridge.mailbox_list_changed.connect(
        lambda account: logger.info(f"{account}: mailbox list updated")
    )
    bridge.mailbox_sync_complete.connect(
        lambda account, mailbox: logger.info(f"{account}/{mailbox}: up to date")
    )
    bridge.sync_failed.connect(
        lambda account, mailbox, message: print(
            f"{account}{'/' + mailbox if mailbox else ''}: {message}", file=sys.stderr
        )
    )
    bridge.start(100)

    threads = manager.sync_all()

    def check_finished():
        if not any(t.is_alive() for t in threads):
            bridge.pump()
            app.quit()

    watcher = QTimer()
    watcher.timeout.connect(check_finished)
    watcher.start(250)

    try:
        exit_code = app.exec_()
    except KeyboardInterrupt:
        exit_code = 130
    finally:
        manager.close(timeout=5)

    logger.info(f"Sync run finished; log written to {log_file}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
