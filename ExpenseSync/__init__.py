"""
ExpenseSync: offline-first expense tracking client for a hosted REST backend.

This package provides:

- :mod:`ExpenseSync.core` – The sync core: local store, remote gateway, connectivity checks, the sync engine and the interactive write path.
- :mod:`ExpenseSync.settings` – Settings management, including schema validation of config.json.
- :mod:`ExpenseSync.status` – Status codes and the exceptions carrying them.
- :mod:`ExpenseSync.log` – Logging setup with an in-memory log tank.

Use :func:`ExpenseSync.exec_` to run the headless sync process.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('ExpenseSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'ExpenseSync: offline-first expense tracking with background synchronization.'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Run the sync engine headless and enter the Qt event loop.

    The periodic trigger runs every ``sync.interval`` seconds, and
    :data:`~ExpenseSync.core.signals.signals` ``.syncRequested`` starts a cycle on demand.
    """
    from .core import sync

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)

    engine = sync.SyncEngine()
    app.aboutToQuit.connect(engine.stop)

    # Start once the event loop runs
    QtCore.QTimer.singleShot(0, engine.start)

    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
