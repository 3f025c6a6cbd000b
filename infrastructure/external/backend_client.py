"""
Backend client - REST, RPC and auth access to the managed Postgres backend.

Rows are exchanged as plain dicts; services turn them into dataclass models.
Every request carries the anon key and, once signed in, the user's access
token so row-level policies apply to the caller.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from infrastructure.config.settings import BackendConfig, get_config
from infrastructure.external.backend_errors import (
    BackendError,
    ConnectivityError,
    RequestTimeoutError,
    error_from_response,
)
from infrastructure.monitoring.logging_service import get_logger

logger = get_logger(__name__)

Filter = Tuple[str, str]


# Filter helpers, encoded the way the REST layer expects query parameters

def eq(column: str, value: Any) -> Filter:
    return column, f"eq.{_literal(value)}"


def neq(column: str, value: Any) -> Filter:
    return column, f"neq.{_literal(value)}"


def in_(column: str, values: Iterable[Any]) -> Filter:
    return column, f"in.({','.join(_literal(v) for v in values)})"


def contains(column: str, values: Iterable[Any]) -> Filter:
    """Set membership over an array column (`participants` contains all values)"""
    return column, "cs.{" + ",".join(_literal(v) for v in values) + "}"


def ilike(column: str, pattern: str) -> Filter:
    return column, f"ilike.{pattern}"


def or_(*conditions: str) -> Filter:
    """Combine raw conditions such as ``name.ilike.*bob*`` with OR"""
    return "or", "(" + ",".join(conditions) + ")"


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class BackendClient:
    """
    Async client for the backend's auto-generated REST/RPC API and auth API.

    Args:
        config: Backend connection settings (defaults to global configuration)
        timeout: Default per-request timeout in seconds
        transport: Optional httpx transport (used by tests)
    """

    def __init__(self, config: Optional[BackendConfig] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        app_config = get_config()
        self.config = config or app_config.backend
        self.timeout = timeout or app_config.messaging.request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None

    @property
    def rest_url(self) -> str:
        return f"{self.config.url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.config.url.rstrip('/')}/auth/v1"

    def set_access_token(self, token: Optional[str]):
        """Set (or clear) the signed-in user's token used for authorization"""
        self._access_token = token

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {self._access_token or self.config.anon_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Client-Info": self.config.client_info,
            "Accept-Profile": self.config.schema,
            "Content-Profile": self.config.schema,
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, url: str, *, params: Optional[Sequence[Filter]] = None,
                       json: Any = None, headers: Optional[Dict[str, str]] = None) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(
                method, url, params=list(params or []), json=json, headers=self._headers(headers)
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"Cannot reach backend: {e.__class__.__name__}: {e}") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            error = error_from_response(response.status_code, payload)
            logger.debug(f"{method} {url} failed: {error}")
            raise error

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Table access

    async def select(self, table: str, columns: str = "*", filters: Sequence[Filter] = (),
                     order: Optional[str] = None, ascending: bool = True,
                     limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Filtered, ordered, limited read

        Returns:
            List of row dicts (possibly empty)
        """
        params: List[Filter] = [("select", columns), *filters]
        if order:
            params.append(("order", f"{order}.{'asc' if ascending else 'desc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        rows = await self._request("GET", f"{self.rest_url}/{table}", params=params)
        return rows or []

    async def select_one(self, table: str, columns: str = "*",
                         filters: Sequence[Filter] = ()) -> Optional[Dict[str, Any]]:
        """Read at most one row, None when nothing matches"""
        rows = await self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, row: Dict[str, Any], columns: str = "*") -> Dict[str, Any]:
        """
        Atomic single-row insert

        Returns:
            The stored row including server-assigned id and timestamps
        """
        rows = await self._request(
            "POST", f"{self.rest_url}/{table}",
            params=[("select", columns)],
            json=row,
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise BackendError(f"Insert into {table} returned no row")
        return rows[0] if isinstance(rows, list) else rows

    async def update(self, table: str, values: Dict[str, Any], filters: Sequence[Filter],
                     columns: str = "*") -> List[Dict[str, Any]]:
        """Partial update of the matching rows, returns the updated rows"""
        rows = await self._request(
            "PATCH", f"{self.rest_url}/{table}",
            params=[("select", columns), *filters],
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return rows or []

    async def delete(self, table: str, filters: Sequence[Filter]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        await self._request("DELETE", f"{self.rest_url}/{table}", params=list(filters))

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a named server-side function with the caller's authorization"""
        return await self._request("POST", f"{self.rest_url}/rpc/{function}", json=params or {})

    async def health_check(self) -> bool:
        """
        Check that the REST endpoint answers

        Auth errors still prove the service is reachable, so only connectivity
        problems count as unhealthy.
        """
        try:
            await self.select("users", columns="id", limit=0)
            return True
        except ConnectivityError:
            raise
        except BackendError as e:
            logger.warning(f"Backend health check warning: {e}")
            return True

    # Auth API

    async def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self.auth_url}/signup",
                                   json={"email": email, "password": password})

    async def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self.auth_url}/token",
                                   params=[("grant_type", "password")],
                                   json={"email": email, "password": password})

    async def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self.auth_url}/token",
                                   params=[("grant_type", "refresh_token")],
                                   json={"refresh_token": refresh_token})

    async def sign_out(self) -> None:
        await self._request("POST", f"{self.auth_url}/logout")

    async def get_user(self) -> Optional[Dict[str, Any]]:
        if not self._access_token:
            return None
        return await self._request("GET", f"{self.auth_url}/user")


# Global backend client instance
_backend_client: Optional[BackendClient] = None


def get_backend_client() -> BackendClient:
    """Get the global backend client instance"""
    global _backend_client
    if _backend_client is None:
        _backend_client = BackendClient()
    return _backend_client
