"""Connectivity checks gating remote calls.

The answer is never cached: every call to :meth:`ConnectivityOracle.is_online`
checks the network afresh, and any failure of the check counts as offline.
"""
import logging
import socket
from typing import Callable, Optional


class ConnectivityOracle:
    """Answers whether the remote store is currently reachable.

    Args:
        host: Host to connect to. Defaults to the ``connectivity.host`` setting, or the remote store's host.
        port: TCP port to connect to. Defaults to the ``connectivity.port`` setting.
        timeout: Connection timeout in seconds. Defaults to the ``connectivity.timeout`` setting.
        check: Optional callable replacing the TCP connection attempt.
    """

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 timeout: Optional[float] = None, check: Optional[Callable[[], bool]] = None) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout
        self._check = check

    def _target(self):
        from ..settings import lib
        config = lib.settings.get_section('connectivity')
        host = self._host or lib.settings.connectivity_host
        port = self._port or config.get('port', 443)
        timeout = self._timeout or config.get('timeout', 3.0)
        return host, port, timeout

    def _tcp_check(self) -> bool:
        host, port, timeout = self._target()
        if not host:
            logging.debug('No connectivity host configured, reporting offline.')
            return False
        with socket.create_connection((host, port), timeout=timeout):
            return True

    def is_online(self) -> bool:
        """Check the network. Never raises."""
        try:
            online = bool(self._check() if self._check is not None else self._tcp_check())
        except Exception as ex:
            logging.debug(f'Connectivity check failed: {ex}')
            return False
        logging.debug(f'Connectivity check: {"online" if online else "offline"}')
        return online
