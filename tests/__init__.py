"""Test suite for ExpenseSync.

Qt's standard paths are switched to test mode before any ExpenseSync module
resolves its AppData location, so tests never touch a real configuration.
"""
from PySide6 import QtCore

QtCore.QStandardPaths.setTestModeEnabled(True)
