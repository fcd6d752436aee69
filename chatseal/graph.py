"""
Async client for the Meta Graph API endpoints used by the WhatsApp bridge.

Non-2xx responses are raised as GraphAPIError. Callers decide what to do by
looking at ``GraphAPIError.kind``, which is derived from the structured
Graph error code rather than from the human-readable message.
Transport failures (timeouts, DNS, connection resets) propagate as
``httpx.HTTPError``.
"""

import enum
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from chatseal.config import settings

logger = logging.getLogger(__name__)

REQUIRED_SCOPES = (
    "whatsapp_business_management",
    "whatsapp_business_messaging",
)

OAUTH_SCOPES = (
    "whatsapp_business_management",
    "whatsapp_business_messaging",
    "business_management",
    "public_profile",
    "email",
)


class GraphErrorKind(str, enum.Enum):
    TOKEN_INVALID = "token_invalid"
    PERMISSION_DENIED = "permission_denied"
    INVALID_PARAMETER = "invalid_parameter"
    RATE_LIMITED = "rate_limited"
    NOT_REGISTERED = "not_registered"
    UNKNOWN = "unknown"


_TOKEN_CODES = {102, 190}
_RATE_LIMIT_CODES = {4, 17, 32, 613, 80007, 130429}
_NOT_REGISTERED_CODES = {133010}


def classify_error_code(code: Optional[int]) -> GraphErrorKind:
    if code is None:
        return GraphErrorKind.UNKNOWN
    if code in _TOKEN_CODES:
        return GraphErrorKind.TOKEN_INVALID
    if code == 10 or 200 <= code <= 299:
        return GraphErrorKind.PERMISSION_DENIED
    if code == 100:
        return GraphErrorKind.INVALID_PARAMETER
    if code in _RATE_LIMIT_CODES:
        return GraphErrorKind.RATE_LIMITED
    if code in _NOT_REGISTERED_CODES:
        return GraphErrorKind.NOT_REGISTERED
    return GraphErrorKind.UNKNOWN


class GraphAPIError(Exception):
    """A Graph API call answered with a non-2xx status."""

    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self.payload = payload
        error = payload.get("error") if isinstance(payload, dict) else None
        self.error: Dict[str, Any] = error if isinstance(error, dict) else {}
        self.code = _as_int(self.error.get("code"))
        self.subcode = _as_int(self.error.get("error_subcode"))
        self.error_type = self.error.get("type")
        self.fbtrace_id = self.error.get("fbtrace_id")
        self.message = self.error.get("message") or f"Graph API request failed with status {status_code}"
        self.kind = classify_error_code(self.code)
        super().__init__(self.message)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "GraphAPIError":
        try:
            payload = response.json()
        except ValueError:
            payload = {"error": {"message": response.text or response.reason_phrase}}
        return cls(response.status_code, payload)

    @property
    def detail(self) -> Any:
        """Platform error detail safe to hand to the dashboard."""
        return self.error or self.payload


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def error_detail(exc: Exception) -> Any:
    """Best available description of a failed upstream call."""
    if isinstance(exc, GraphAPIError):
        return exc.detail
    return str(exc) or exc.__class__.__name__


class GraphClient:
    """
    Thin wrapper around httpx.AsyncClient bound to one Graph API version.

    Use as an async context manager so the connection pool is released.
    A custom transport can be injected (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.version = version or settings.GRAPH_API_VERSION
        root = (base_url or settings.GRAPH_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{root}/{self.version}/",
            timeout=timeout if timeout is not None else settings.GRAPH_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        kwargs: Dict[str, Any] = {"params": params, "json": json, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self._client.request(method, path.lstrip("/"), **kwargs)
        if response.is_error:
            error = GraphAPIError.from_response(response)
            logger.warning(
                f"Graph API {method} {path} failed: status={response.status_code} "
                f"code={error.code} subcode={error.subcode} type={error.error_type} kind={error.kind.value} "
                f"fbtrace_id={error.fbtrace_id} message={error.message}"
            )
            raise error
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def exchange_code(self, code: str, redirect_uri: str) -> str:
        data = await self._request(
            "GET",
            "oauth/access_token",
            params={
                "client_id": settings.META_APP_ID,
                "client_secret": settings.META_APP_SECRET,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        token = data.get("access_token")
        if not token:
            raise GraphAPIError(200, {"error": {"message": "Token exchange returned no access_token"}})
        return token

    async def token_scopes(self, input_token: str) -> List[str]:
        """Granted scopes of a user token, via debug_token with the app token."""
        data = await self._request(
            "GET",
            "debug_token",
            params={
                "input_token": input_token,
                "access_token": f"{settings.META_APP_ID}|{settings.META_APP_SECRET}",
            },
        )
        info = data.get("data") if isinstance(data.get("data"), dict) else {}
        scopes = info.get("scopes") or []
        return [str(scope) for scope in scopes]

    # ------------------------------------------------------------------
    # Account discovery
    # ------------------------------------------------------------------

    async def list_business_accounts(self, token: str) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET", "me/whatsapp_business_accounts", params={"fields": "id,name"}, token=token
        )
        return _data_list(data)

    async def list_owned_business_accounts(self, token: str) -> List[Dict[str, Any]]:
        """WABAs owned by the businesses the user belongs to."""
        data = await self._request(
            "GET",
            "me",
            params={"fields": "name,businesses{owned_whatsapp_business_account{id,name}}"},
            token=token,
        )
        businesses = data.get("businesses")
        if isinstance(businesses, dict):
            businesses = businesses.get("data")
        accounts = []
        for business in businesses if isinstance(businesses, list) else []:
            if not isinstance(business, dict):
                continue
            owned = business.get("owned_whatsapp_business_account")
            if isinstance(owned, dict) and isinstance(owned.get("data"), list):
                accounts.extend(item for item in owned["data"] if isinstance(item, dict))
            elif isinstance(owned, dict):
                accounts.append(owned)
        return accounts

    async def get_business_account(self, waba_id: str, token: str, fields: str = "id,name") -> Dict[str, Any]:
        return await self._request("GET", waba_id, params={"fields": fields}, token=token)

    async def list_phone_numbers(self, waba_id: str, token: str, fields: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"fields": fields} if fields else None
        data = await self._request("GET", f"{waba_id}/phone_numbers", params=params, token=token)
        return _data_list(data)

    async def get_phone_number(
        self,
        phone_number_id: str,
        token: str,
        fields: str = "id,display_phone_number,status,name_status",
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "GET", phone_number_id, params={"fields": fields}, token=token, timeout=timeout
        )

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_text_message(
        self, phone_number_id: str, token: str, to: str, body: str, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        return await self._request(
            "POST", f"{phone_number_id}/messages", json=payload, token=token, timeout=timeout
        )


def _data_list(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = data.get("data")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


async def get_graph_client() -> AsyncGenerator[GraphClient, None]:
    """
    Dependency yielding a GraphClient for the duration of one request.
    """
    async with GraphClient() as client:
        yield client
