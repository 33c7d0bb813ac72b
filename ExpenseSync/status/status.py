"""Status definitions and exceptions for ExpenseSync.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions used by the gateway, store and settings

The remote error taxonomy is carried by the :attr:`BaseStatusException.retryable`
flag: only :class:`NetworkUnavailableException` and :class:`ServerErrorException`
are worth retrying, everything else is terminal for the operation that raised it.
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ConfigNotFound = enum.auto()
    ConfigInvalid = enum.auto()
    RemoteNotConfigured = enum.auto()

    # Session status
    NotAuthenticated = enum.auto()
    SessionInvalid = enum.auto()

    # Remote store status
    NetworkUnavailable = enum.auto()
    ServerError = enum.auto()
    ConstraintViolation = enum.auto()

    # Local store status
    StoreUnavailable = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigNotFound: 'Could not find the config file.',
    Status.ConfigInvalid: 'The config seems to be incomplete, or contains invalid values.',
    Status.RemoteNotConfigured: 'The remote store is not configured. Have you set the url and api key in the settings?',

    Status.NotAuthenticated: 'You are not signed in. Please sign in again to sync your expenses.',
    Status.SessionInvalid: 'The saved session could not be read. Please sign in again.',

    Status.NetworkUnavailable: 'The remote store could not be reached. Changes are kept on this device.',
    Status.ServerError: 'The remote store reported an error. The operation will be retried.',
    Status.ConstraintViolation: 'The remote store rejected the change.',

    Status.StoreUnavailable: 'The local store could not be accessed.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in ExpenseSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.
        retryable (bool): Whether repeating the failed operation may succeed.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus
    retryable = False

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message or ''
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        # Transient failures are queued for the next cycle and stay silent
        if self.retryable:
            logging.debug(exception_message)
            return

        logging.error(exception_message)

        from ..core.signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class ConfigNotFoundException(BaseStatusException):
    """Exception raised when the config file cannot be found."""
    status = Status.ConfigNotFound


class ConfigInvalidException(BaseStatusException):
    """Exception raised when the config file is invalid or malformed."""
    status = Status.ConfigInvalid


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when the remote url or api key is missing."""
    status = Status.RemoteNotConfigured


class NotAuthenticatedException(BaseStatusException):
    """Exception raised when there is no session or the remote rejected it."""
    status = Status.NotAuthenticated


class SessionInvalidException(BaseStatusException):
    """Exception raised when the stored session file is corrupt."""
    status = Status.SessionInvalid


class NetworkUnavailableException(BaseStatusException):
    """Exception raised when the remote store cannot be reached."""
    status = Status.NetworkUnavailable
    retryable = True


class ServerErrorException(BaseStatusException):
    """Exception raised for transient remote failures (5xx, throttling, timeouts)."""
    status = Status.ServerError
    retryable = True


class ConstraintViolationException(BaseStatusException):
    """Exception raised when the remote store rejects a write (duplicate, invalid reference, bad data)."""
    status = Status.ConstraintViolation


class StoreUnavailableException(BaseStatusException):
    """Exception raised when the local SQLite store cannot be read or written."""
    status = Status.StoreUnavailable
