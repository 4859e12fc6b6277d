# shopguard/services/supabase_store.py
"""
Remote store backed by the hosted backend's PostgREST API (/rest/v1).

Filters are translated to PostgREST operators: ``col=eq.value`` for
equality, ``col=is.null`` for None and ``col=in.(a,b)`` for set
membership. Requests carry the signed-in user's access token when one
is available so row-level security applies.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from shopguard.core.exceptions import (
    NetworkError,
    RecordNotFoundError,
    StoreConflictError,
    StoreError,
)
from shopguard.core.service_base import BaseService, ServiceConfig
from shopguard.services.remote_store import Filters, Record, RemoteStore

logger = logging.getLogger(__name__)

REST_PATH = "/rest/v1"
UNIQUE_VIOLATION = "23505"
NO_ROWS = "PGRST116"

TokenSource = Callable[[], Optional[str]]


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quoted(value: Any) -> str:
    text = _literal(value)
    if any(c in text for c in ',()"'):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def build_filters(filters: Optional[Filters]) -> Dict[str, str]:
    """Translate equality filters into PostgREST query parameters"""
    params: Dict[str, str] = {}
    for column, value in (filters or {}).items():
        params[column] = "is.null" if value is None else f"eq.{_literal(value)}"
    return params


class SupabaseRemoteStore(BaseService[ServiceConfig], RemoteStore):
    """PostgREST-backed RemoteStore"""

    def __init__(
        self,
        config: ServiceConfig,
        access_token: Optional[TokenSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(config, transport=transport, logger=logger)
        self._access_token = access_token

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        token = self._access_token() if self._access_token else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _check(self, response: httpx.Response, table: str, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        code = str(body.get("code", "")) if isinstance(body, dict) else ""
        message = body.get("message", "") if isinstance(body, dict) else ""

        if status == 409 or code == UNIQUE_VIOLATION:
            raise StoreConflictError(
                f"Duplicate key on {table}",
                collection=table,
                details={'code': code, 'operation': operation}
            )
        if code == NO_ROWS or status == 406:
            raise RecordNotFoundError(f"No row in {table}", collection=table)
        if status >= 500:
            raise NetworkError(
                f"Store returned {status} for {operation} on {table}",
                service_name=self.service_name,
                operation=operation,
                details={'status': status}
            )
        raise StoreError(
            f"Store rejected {operation} on {table}: {message or status}",
            collection=table,
            details={'status': status, 'code': code}
        )

    async def _request(
        self,
        method: str,
        table: str,
        operation: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None
    ) -> httpx.Response:
        response = await self._send(
            method, f"{REST_PATH}/{table}", f"{operation} {table}",
            params=params, json=json, headers=self._headers(prefer)
        )
        self._check(response, table, operation)
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> List[Record]:
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            return [data]
        return list(data or [])

    # ===========================================
    # REMOTE STORE INTERFACE
    # ===========================================

    async def select(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Record]:
        params = {"select": columns, **build_filters(filters)}
        return self._rows(await self._request("GET", table, "select", params=params))

    async def select_one(self, table: str, filters: Filters, columns: str = "*") -> Record:
        params = {"select": columns, "limit": "1", **build_filters(filters)}
        rows = self._rows(await self._request("GET", table, "select_one", params=params))
        if not rows:
            raise RecordNotFoundError(f"No row in {table}", collection=table)
        return rows[0]

    async def select_in(self, table: str, column: str, values: Sequence[Any], columns: str = "*") -> List[Record]:
        if not values:
            return []
        params = {
            "select": columns,
            column: "in.(" + ",".join(_quoted(v) for v in values) + ")",
        }
        return self._rows(await self._request("GET", table, "select_in", params=params))

    async def insert(self, table: str, record: Record) -> Record:
        response = await self._request(
            "POST", table, "insert", json=record, prefer="return=representation"
        )
        rows = self._rows(response)
        return rows[0] if rows else dict(record)

    async def update(self, table: str, filters: Filters, values: Record) -> List[Record]:
        if not filters:
            raise StoreError("Refusing unfiltered update", collection=table)
        return self._rows(await self._request(
            "PATCH", table, "update",
            params=build_filters(filters), json=values, prefer="return=representation"
        ))

    async def delete(self, table: str, filters: Filters) -> int:
        if not filters:
            raise StoreError("Refusing unfiltered delete", collection=table)
        response = await self._request(
            "DELETE", table, "delete",
            params=build_filters(filters), prefer="return=representation"
        )
        return len(self._rows(response))

    async def upsert(self, table: str, record: Record, on_conflict: Sequence[str]) -> Record:
        response = await self._request(
            "POST", table, "upsert",
            params={"on_conflict": ",".join(on_conflict)},
            json=record,
            prefer="resolution=merge-duplicates,return=representation"
        )
        rows = self._rows(response)
        return rows[0] if rows else dict(record)

    async def close(self) -> None:
        await self.shutdown()

    async def health_check(self) -> Dict[str, Any]:
        try:
            response = await self._send("GET", f"{REST_PATH}/", "health")
        except NetworkError as e:
            return {"healthy": False, "status": "unreachable", "details": {"error": e.message}}
        return {
            "healthy": response.status_code < 500,
            "status": "connected" if response.status_code < 500 else "degraded",
            "details": {"status_code": response.status_code},
        }
