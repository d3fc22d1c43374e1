"""
Persistence gateway interface and its HTTP implementation.

Controllers talk to storage only through the four calls of
``PersistenceGateway``. ``SOHDatabase`` satisfies it in-process;
``ApiGateway`` satisfies it against a running API server.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .errors import PersistenceError, RecordNotFound
from .schemas import CATALOG_TABLES, RECORD_TABLES

_logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    def list(self, table: str, filter: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None) -> List[Dict[str, Any]]: ...

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def update(self, table: str, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete(self, table: str, record_id: str) -> None: ...


class ApiGateway:
    """PersistenceGateway over the REST API using an ``httpx.Client``.

    Pass either a configured client (``FastAPI``'s ``TestClient`` works too)
    or a ``base_url`` plus session ``token``.
    """

    def __init__(self, client: Optional[httpx.Client] = None, base_url: str = '',
                 token: Optional[str] = None):
        headers = {'X-Auth-Token': token} if token else {}
        self._client = client or httpx.Client(base_url=base_url, headers=headers)
        if client is not None and token:
            self._client.headers.update(headers)

    def close(self) -> None:
        self._client.close()

    def _path(self, table: str) -> str:
        if table in RECORD_TABLES:
            return f"/api/records/{table}"
        if table in CATALOG_TABLES:
            return f"/api/catalogs/{table}"
        raise ValueError(f"UNKNOWN_TABLE:{table}")

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            res = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            _logger.error("Gateway transport error %s %s: %s", method, url, e)
            raise PersistenceError(f"Error de conexión: {e}") from e
        if res.status_code >= 400:
            try:
                detail = res.json().get('detail', res.text)
            except ValueError:
                detail = res.text
            raise PersistenceError(str(detail), status_code=res.status_code)
        return res.json()

    def list(self, table: str, filter: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        remaining = dict(filter or {})
        if table in CATALOG_TABLES and remaining.get('activo') is True:
            params['active_only'] = 'true'
            remaining.pop('activo')
        if order_by:
            params['order_by'] = order_by
        rows = self._request('GET', self._path(table), params=params)
        if remaining:
            rows = [r for r in rows if all(r.get(k) == v for k, v in remaining.items())]
        return rows

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._request('POST', self._path(table), json=record)['record']

    def update(self, table: str, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._request('PUT', f"{self._path(table)}/{record_id}", json=patch)['record']
        except PersistenceError as e:
            if e.status_code == 404:
                raise RecordNotFound(table, record_id) from e
            raise

    def delete(self, table: str, record_id: str) -> None:
        try:
            self._request('DELETE', f"{self._path(table)}/{record_id}")
        except PersistenceError as e:
            if e.status_code == 404:
                raise RecordNotFound(table, record_id) from e
            raise
