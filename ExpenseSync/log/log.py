"""Root logger setup for the sync process.

Everything logs through the root logger with f-string messages. Records go to
stdout, to the in-memory :class:`TankHandler` (so a host application can show
why a background sync failed), and Qt's own diagnostics are routed into the
``Qt`` logger.
"""
import collections
import logging
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

LOG_LEVEL = logging.INFO
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# The sync process is long-running, keep the in-memory tank bounded
TANK_MAX_RECORDS = 5000

LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)

QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


def set_logging_level(level):
    """
    Sets the level of the root logger and of every handler installed on it.

    Args:
        level (int): One of the standard logging levels.

    Raises:
        ValueError: If ``level`` is not a standard logging level.
    """
    if not isinstance(level, int):
        raise ValueError("Logging level must be an integer.")
    if level not in LEVELS:
        raise ValueError(f'Invalid logging level {level}. Use one of the standard levels, e.g. logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Forwards a Qt diagnostic to the ``Qt`` logger. A fatal message exits the process.
    """
    logging.getLogger('Qt').log(QT_LEVELS.get(mode, logging.INFO), message.strip())
    if mode == QtMsgType.QtFatalMsg:
        sys.exit(1)


def _add_handler(root_logger, handler, formatter, log_level):
    handler.setFormatter(formatter)
    handler.setLevel(log_level)
    root_logger.addHandler(handler)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """
    Replaces the root logger's handlers with the sync process' handlers.

    The tank handler is always installed.

    Args:
        enable_stream_handler (bool): Log to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level applied to the root logger and all handlers.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear all handlers to avoid formatting conflicts
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    if enable_stream_handler:
        _add_handler(root_logger, logging.StreamHandler(sys.stdout), formatter, log_level)
    _add_handler(root_logger, TankHandler(), formatter, log_level)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """
    Returns the TankHandler installed on the root logger, or None.
    """
    return next(
        (h for h in logging.getLogger().handlers if isinstance(h, TankHandler)),
        None
    )


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted records in memory.

    Attributes:
        tank (collections.deque[tuple[int, str]]): (level, message) pairs. Once
            ``max_records`` is reached the oldest pair is dropped.
    """

    def __init__(self, max_records=TANK_MAX_RECORDS):
        super().__init__()
        self.tank = collections.deque(maxlen=max_records)

    def emit(self, record):
        try:
            self.tank.append((record.levelno, self.format(record)))
        except (Exception, KeyboardInterrupt):
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET):
        """
        Args:
            level (int, optional): Minimum level of the returned messages.

        Returns:
            list[str]: Stored messages at or above ``level``, oldest first.
        """
        return [msg for lvl, msg in self.tank if lvl >= level]

    def clear_logs(self):
        self.tank.clear()
