"""
Persisted session and owner scope.

Provides the :class:`SessionManager` that loads the signed-in user's session
from disk, refreshes expired access tokens against the auth endpoint and
exposes the owner id every local and remote operation is scoped to.

Signing in is the host application's job: it hands the resulting tokens to
:meth:`SessionManager.save_session`.
"""

import json
import logging
import pathlib
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import requests

from ..status import status

# Refresh this many seconds before the access token actually expires
EXPIRY_LEEWAY = 60


@dataclass
class Session:
    """Tokens of a signed-in user."""
    user_id: str
    access_token: str
    refresh_token: str = ''
    expires_at: float = 0.0

    def expired(self, now: float) -> bool:
        if not self.expires_at:
            return False
        return now >= self.expires_at - EXPIRY_LEEWAY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        """Build a session from its JSON form.

        Raises:
            ValueError: If the user id or access token is missing.
        """
        if not data.get('user_id') or not data.get('access_token'):
            raise ValueError('Session is missing the user id or access token.')
        return cls(
            user_id=str(data['user_id']),
            access_token=str(data['access_token']),
            refresh_token=str(data.get('refresh_token') or ''),
            expires_at=float(data.get('expires_at') or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SessionManager:
    """Manages the persisted session with thread-safe refresh.

    Args:
        session_path: Location of session.json. Defaults to the settings' session path.
        clock: Callable returning the current epoch time in seconds.
    """

    def __init__(self, session_path: Optional[pathlib.Path] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._session_path = pathlib.Path(session_path) if session_path else None
        self._clock = clock

    @property
    def session_path(self) -> pathlib.Path:
        if self._session_path is not None:
            return self._session_path
        from ..settings import lib
        return lib.settings.session_path

    def _load(self) -> Optional[Session]:
        """Return the cached session, reading it from disk on first use.

        Raises:
            status.SessionInvalidException: If session.json exists but cannot be read.
        """
        if self._session is not None:
            return self._session
        if not self.session_path.exists():
            return None

        try:
            with self.session_path.open('r', encoding='utf-8') as f:
                self._session = Session.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, AttributeError) as ex:
            # Session file invalid, remove it and require a new sign in
            try:
                self.session_path.unlink()
            except OSError as unlink_ex:
                logging.debug(f'Could not remove invalid session file: {unlink_ex}')
            raise status.SessionInvalidException(str(ex)) from ex
        return self._session

    def has_session(self) -> bool:
        """Check if a session exists, without refreshing or validating it."""
        with self._lock:
            try:
                return self._load() is not None
            except status.SessionInvalidException:
                return False

    def current_owner(self) -> str:
        """Return the signed-in user's id. Works offline, no refresh is attempted.

        Raises:
            status.NotAuthenticatedException: If nobody is signed in.
            status.SessionInvalidException: If the stored session is corrupt.
        """
        with self._lock:
            session = self._load()
            if session is None:
                raise status.NotAuthenticatedException('No saved session.')
            return session.user_id

    def get_valid_session(self) -> Session:
        """Return a session whose access token is valid, refreshing it if expired.

        Raises:
            status.NotAuthenticatedException: If there is no session or it cannot be refreshed.
            status.SessionInvalidException: If the stored session is corrupt.
            status.NetworkUnavailableException: If the auth endpoint cannot be reached.
            status.ServerErrorException: If the auth endpoint fails transiently.
        """
        with self._lock:
            session = self._load()
            if session is None:
                raise status.NotAuthenticatedException('No saved session.')

            if session.expired(self._clock()):
                if not session.refresh_token:
                    raise status.NotAuthenticatedException('Session expired and cannot be refreshed.')
                session = self._refresh(session)
                self._write(session)
                self._session = session
            return session

    def _refresh(self, session: Session) -> Session:
        """Exchange the refresh token for a new access token."""
        from ..settings import lib
        url = lib.settings.remote_url
        api_key = lib.settings.get_section('remote').get('api_key', '')
        if not url or not api_key:
            raise status.RemoteNotConfiguredException()

        logging.debug('Refreshing the access token.')
        try:
            response = requests.post(
                f'{url}/auth/v1/token',
                params={'grant_type': 'refresh_token'},
                json={'refresh_token': session.refresh_token},
                headers={'apikey': api_key},
                timeout=lib.settings.get_section('remote').get('timeout', 10.0),
            )
        except requests.Timeout as ex:
            raise status.ServerErrorException(f'Token refresh timed out: {ex}') from ex
        except requests.RequestException as ex:
            raise status.NetworkUnavailableException(f'Token refresh failed: {ex}') from ex

        if response.status_code >= 500 or response.status_code == 429:
            raise status.ServerErrorException(f'Token refresh failed with HTTP {response.status_code}.')
        if response.status_code != 200:
            self.clear_session()
            raise status.NotAuthenticatedException(f'Token refresh rejected with HTTP {response.status_code}.')

        try:
            data = response.json()
            expires_at = data.get('expires_at') or self._clock() + float(data.get('expires_in', 3600))
            refreshed = Session(
                user_id=str((data.get('user') or {}).get('id') or session.user_id),
                access_token=data['access_token'],
                refresh_token=data.get('refresh_token') or session.refresh_token,
                expires_at=float(expires_at),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as ex:
            raise status.ServerErrorException(f'Malformed token refresh response: {ex}') from ex

        logging.info('Access token refreshed.')
        return refreshed

    def _write(self, session: Session) -> None:
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        with self.session_path.open('w', encoding='utf-8') as f:
            json.dump(session.to_dict(), f, indent=4)

    def save_session(self, session: Session) -> None:
        """Persist a session handed over by the sign-in flow."""
        with self._lock:
            self._write(session)
            self._session = session
        logging.info(f'Session saved for user "{session.user_id}".')

    def clear_session(self) -> None:
        """Forget the session, both in memory and on disk."""
        with self._lock:
            self._session = None
            if self.session_path.exists():
                self.session_path.unlink()
        logging.info('Session cleared.')


session_manager = SessionManager()
