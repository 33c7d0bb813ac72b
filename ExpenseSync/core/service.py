"""
REST gateway to the remote expenses store.

Talks to a PostgREST-style API (``{url}/rest/v1/{table}``) on behalf of the
signed-in user. Every call is scoped to the session's owner: inserts carry
the owner's ``user_id`` and updates, deletes and selects filter on it.

Failures are raised as :class:`~ExpenseSync.status.status.BaseStatusException`
subclasses so that callers can tell transient failures (``retryable``) from
terminal ones:

    - NotAuthenticatedException: no session, or the token was rejected (401)
    - NetworkUnavailableException: the host could not be reached
    - ServerErrorException: 5xx, 408, 429 and request timeouts
    - ConstraintViolationException: 400, 403, 404, 409, 422 and other client errors
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from . import auth
from ..status import status

RETRYABLE_HTTP_STATUS = frozenset({408, 429})
AUTH_HTTP_STATUS = frozenset({401})


def _error_detail(response: requests.Response) -> str:
    """Extract the server's error message from a response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get('message') or data.get('error_description') or data.get('error') or data)
    return str(data)


def raise_for_status(response: requests.Response) -> None:
    """Raise the status exception matching an unsuccessful HTTP response.

    Raises:
        status.NotAuthenticatedException: On 401.
        status.ServerErrorException: On 5xx, 408 and 429.
        status.ConstraintViolationException: On any other 4xx.
    """
    code = response.status_code
    if 200 <= code < 300:
        return

    detail = f'HTTP {code}: {_error_detail(response)}'
    if code in AUTH_HTTP_STATUS:
        raise status.NotAuthenticatedException(detail)
    if code >= 500 or code in RETRYABLE_HTTP_STATUS:
        raise status.ServerErrorException(detail)
    raise status.ConstraintViolationException(detail)


def _filter_params(filters: Optional[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Convert column filters to PostgREST query parameters.

    A plain value means equality, a ``(operator, value)`` tuple or a list of
    such tuples selects other operators (``gte``, ``lt``, ...).
    """
    params: Dict[str, List[str]] = {}
    for column, value in (filters or {}).items():
        conditions: List[Tuple[str, Any]]
        if isinstance(value, tuple):
            conditions = [value]
        elif isinstance(value, list):
            conditions = value
        else:
            conditions = [('eq', value)]
        params[column] = [f'{op}.null' if v is None else f'{op}.{v}' for op, v in conditions]
    return params


class RemoteGateway:
    """Owner-scoped INSERT / UPDATE / DELETE / SELECT against the remote store.

    Args:
        session_manager: Source of the owner id and access token.
        url: Base url of the remote store. Defaults to the ``remote.url`` setting.
        api_key: Public api key. Defaults to the ``remote.api_key`` setting.
        timeout: Per-request timeout in seconds. Defaults to the ``remote.timeout`` setting.
        http: The :class:`requests.Session` used for requests.
    """

    def __init__(self, session_manager: Optional[auth.SessionManager] = None,
                 url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, http: Optional[requests.Session] = None) -> None:
        self._sessions = session_manager or auth.session_manager
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._http = http or requests.Session()

    def _remote_config(self) -> Tuple[str, str, float]:
        from ..settings import lib
        config = lib.settings.get_section('remote')
        url = (self._url if self._url is not None else config.get('url', '')).rstrip('/')
        api_key = self._api_key if self._api_key is not None else config.get('api_key', '')
        timeout = self._timeout if self._timeout is not None else float(config.get('timeout', 10.0))
        if not url or not api_key:
            raise status.RemoteNotConfiguredException()
        return url, api_key, timeout

    def _request(self, method: str, table: str, params: Optional[Dict[str, Any]] = None,
                 body: Any = None, prefer: Optional[str] = None) -> requests.Response:
        """Send one request as the signed-in owner and return the successful response."""
        url, api_key, timeout = self._remote_config()
        session = self._sessions.get_valid_session()

        headers = {
            'apikey': api_key,
            'Authorization': f'Bearer {session.access_token}',
            'Content-Type': 'application/json',
        }
        if prefer:
            headers['Prefer'] = prefer

        params = dict(params or {})
        if method == 'POST':
            body = dict(body, user_id=session.user_id)
        else:
            params.update(_filter_params({'user_id': session.user_id}))

        logging.debug(f'{method} {table} {params}')
        try:
            response = self._http.request(
                method,
                f'{url}/rest/v1/{table}',
                params=params,
                json=body,
                headers=headers,
                timeout=timeout,
            )
        except requests.Timeout as ex:
            raise status.ServerErrorException(f'{method} {table} timed out after {timeout}s.') from ex
        except requests.RequestException as ex:
            raise status.NetworkUnavailableException(f'{method} {table} failed: {ex}') from ex

        raise_for_status(response)
        return response

    @staticmethod
    def _rows(response: requests.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as ex:
            raise status.ServerErrorException(f'Malformed response body: {ex}') from ex
        if isinstance(data, dict):
            return [data]
        return list(data)

    def insert(self, table: str, row: Dict[str, Any], on_conflict: Optional[str] = None) -> Dict[str, Any]:
        """Insert one row owned by the signed-in user.

        Args:
            table: Remote table name.
            row: Column values. ``user_id`` is always set to the owner.
            on_conflict: Unique column making the insert an idempotent upsert.

        Returns:
            The persisted row, including its remote ``id``.
        """
        params = {'on_conflict': on_conflict} if on_conflict else None
        prefer = 'return=representation'
        if on_conflict:
            prefer = f'resolution=merge-duplicates,{prefer}'

        response = self._request('POST', table, params=params, body=row, prefer=prefer)
        rows = self._rows(response)
        if not rows:
            raise status.ServerErrorException(f'Insert into {table} returned no row.')
        return rows[0]

    def update(self, table: str, match: Dict[str, Any], changes: Dict[str, Any]) -> int:
        """Apply changes to the owner's rows matching ``match``.

        Returns:
            Number of rows changed.
        """
        if not match:
            raise ValueError('Refusing to update without a match filter.')
        response = self._request(
            'PATCH', table, params=_filter_params(match), body=changes, prefer='return=representation'
        )
        return len(self._rows(response))

    def delete(self, table: str, match: Dict[str, Any]) -> int:
        """Delete the owner's rows matching ``match``.

        Returns:
            Number of rows deleted.
        """
        if not match:
            raise ValueError('Refusing to delete without a match filter.')
        response = self._request(
            'DELETE', table, params=_filter_params(match), prefer='return=representation'
        )
        return len(self._rows(response))

    def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
               order: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the owner's rows matching ``filters``.

        Args:
            table: Remote table name.
            filters: Column filters, see :func:`_filter_params`.
            order: PostgREST order clause, e.g. ``'date.desc'``.
        """
        params: Dict[str, Any] = {'select': '*'}
        params.update(_filter_params(filters))
        if order:
            params['order'] = order
        response = self._request('GET', table, params=params)
        return self._rows(response)
