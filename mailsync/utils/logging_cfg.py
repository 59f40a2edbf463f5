"""
Logging configuration for mailsync.

Log records go to a rotating file under ``<data_dir>/logs`` and, at WARNING
and above unless debugging, to the console. Records emitted on an account's
sync thread carry the account address in the file output.
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from mailsync import config


LOG_FILE_NAME = "mailsync.log"

# Maximum log file size (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files to keep
BACKUP_COUNT = 5

SYNC_THREAD_PREFIX = "sync-"

FILE_FORMAT = '%(asctime)s - %(name)s - [%(account)s] %(levelname)s - %(message)s'
CONSOLE_FORMAT = '%(levelname)s - %(message)s'

NOISY_LOGGERS = ("imaplib", "urllib3", "requests", "google", "google.auth", "PyQt5")


class AccountFilter(logging.Filter):
    """Sets ``record.account`` from the name of the sync thread, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        thread = record.threadName or ""
        if thread.startswith(SYNC_THREAD_PREFIX):
            record.account = thread[len(SYNC_THREAD_PREFIX):]
        else:
            record.account = "-"
        return True


def _file_handler(log_file: Path, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.addFilter(AccountFilter())
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def _console_handler(debug: bool) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    handler.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT))
    return handler


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> Path:
    """
    Configure the root logger for mailsync.

    Any handlers already installed on the root logger are closed and
    replaced.

    Args:
        debug: If True, sets log level to DEBUG. Otherwise, uses INFO.
        log_dir: Directory for the log file. Defaults to <data_dir>/logs.

    Returns:
        The path of the log file.
    """
    log_dir = Path(log_dir) if log_dir else config.DATA_DIR / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME
    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(_file_handler(log_file, log_level))
    root_logger.addHandler(_console_handler(debug))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info(f"mailsync started (data dir {config.DATA_DIR})")
    logger.info(f"Log level: {logging.getLevelName(log_level)}, log file: {log_file}")
    logger.info("=" * 60)
    return log_file
