"""Async HTTP client for the advertising platform Graph-style API."""

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import httpx
import structlog

from app.provisioning.types import EntityType
from app.services.platform.errors import (
    RATE_LIMIT_CODES,
    PlatformAPIError,
    PlatformNetworkError,
    PlatformRateLimitError,
    PlatformTimeoutError,
)

logger = structlog.get_logger(__name__)

DEFAULT_CALLS_ALLOWED = 200
DEFAULT_WINDOW_SECONDS = 3600
CHILD_PAGE_LIMIT = 1000

_EDGES = {
    EntityType.CAMPAIGN: "campaigns",
    EntityType.AD_SET: "adsets",
    EntityType.AD: "ads",
}


@dataclass
class RateLimitSignal:
    """Usage snapshot parsed from platform response headers."""

    calls_used: float
    calls_allowed: int
    usage_percentage: float
    reset_in_seconds: int
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlatformResponse:
    data: dict[str, Any]
    signal: Optional[RateLimitSignal] = None


def parse_rate_limit_headers(
    headers: Mapping[str, str],
    default_calls_allowed: int = DEFAULT_CALLS_ALLOWED,
    default_window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Optional[RateLimitSignal]:
    """Parse ``x-business-use-case-usage`` (preferred) or ``x-app-usage``.

    Business use case format::

        {"<account_id>": [{"type": "ads_management", "call_count": 50,
                           "estimated_time_to_regain_access": 3540}]}

    Returns None when neither header is present or both are malformed.
    """
    business = headers.get("x-business-use-case-usage")
    app_usage = headers.get("x-app-usage")
    if not business and not app_usage:
        return None

    calls_used: float = 0
    calls_allowed = default_calls_allowed
    reset_in = default_window_seconds

    try:
        if business:
            usage = json.loads(business)
            entries = next(iter(usage.values()), None) if isinstance(usage, dict) else None
            if entries:
                calls_used = entries[0].get("call_count") or 0
                reset_in = entries[0].get("estimated_time_to_regain_access") or default_window_seconds
        else:
            usage = json.loads(app_usage)
            calls_used = usage.get("call_count") or 0
    except (ValueError, AttributeError, TypeError) as e:
        logger.warning("rate_limit_header_unparseable", error=str(e))
        return None

    return RateLimitSignal(
        calls_used=calls_used,
        calls_allowed=calls_allowed,
        usage_percentage=(calls_used / calls_allowed) * 100 if calls_allowed else 0.0,
        reset_in_seconds=int(reset_in),
        raw={"x-business-use-case-usage": business, "x-app-usage": app_usage},
    )


class AdPlatformClient:
    """Thin wrapper over the platform REST endpoints used by provisioning."""

    def __init__(
        self,
        api_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        default_calls_allowed: int = DEFAULT_CALLS_ALLOWED,
        default_window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ):
        """
        Initialize the platform client.

        Args:
            api_url: Versioned API root, e.g. https://graph.facebook.com/v19.0
            timeout: Request timeout in seconds
            client: Optional shared httpx client (tests inject a MockTransport)
        """
        self._api_url = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._default_calls_allowed = default_calls_allowed
        self._default_window_seconds = default_window_seconds

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _account_path(account_id: str) -> str:
        return account_id if account_id.startswith("act_") else f"act_{account_id}"

    async def create_entity(
        self,
        entity_type: EntityType,
        account_id: str,
        params: dict[str, Any],
        token: str,
    ) -> PlatformResponse:
        """Create a campaign, ad set or ad. Returns the body with its ``id``."""
        path = f"{self._account_path(account_id)}/{_EDGES[entity_type]}"
        return await self._request("POST", path, token, data=params)

    async def delete_entity(self, external_id: str, token: str) -> PlatformResponse:
        return await self._request("DELETE", external_id, token)

    async def get_me(self, token: str) -> dict[str, Any]:
        response = await self._request("GET", "me", token, params={"fields": "id,name"})
        return response.data

    async def get_entity(self, external_id: str, token: str) -> dict[str, Any]:
        response = await self._request(
            "GET", external_id, token, params={"fields": "id,name,status"}
        )
        return response.data

    async def list_children(
        self, parent_id: str, entity_type: EntityType, token: str
    ) -> list[dict[str, Any]]:
        """Ad sets under a campaign, or ads under an ad set."""
        response = await self._request(
            "GET",
            f"{parent_id}/{_EDGES[entity_type]}",
            token,
            params={"fields": "id,name", "limit": CHILD_PAGE_LIMIT},
        )
        return response.data.get("data", [])

    async def get_account(self, account_id: str, token: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            self._account_path(account_id),
            token,
            params={"fields": "id,name,account_status,disable_reason"},
        )
        return response.data

    async def find_campaigns_by_name(
        self, account_id: str, name: str, token: str
    ) -> list[dict[str, Any]]:
        filtering = [{"field": "name", "operator": "EQUAL", "value": name}]
        response = await self._request(
            "GET",
            f"{self._account_path(account_id)}/campaigns",
            token,
            params={"fields": "id,name", "filtering": json.dumps(filtering), "limit": 1},
        )
        return response.data.get("data", [])

    async def count_campaigns(self, account_id: str, token: str) -> int:
        response = await self._request(
            "GET",
            f"{self._account_path(account_id)}/campaigns",
            token,
            params={"summary": "total_count", "limit": 0},
        )
        return int(response.data.get("summary", {}).get("total_count", 0))

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> PlatformResponse:
        url = f"{self._api_url}/{path}"
        query = dict(params or {})
        query["access_token"] = token
        body = None
        if data is not None:
            body = {
                k: json.dumps(v) if isinstance(v, (dict, list)) else v
                for k, v in data.items()
            }

        try:
            response = await self._client.request(method, url, params=query, data=body)
        except httpx.TimeoutException as e:
            raise PlatformTimeoutError(f"Platform request timed out: {e}") from e
        except httpx.TransportError as e:
            raise PlatformNetworkError(f"Platform connection failed: {e}") from e

        signal = parse_rate_limit_headers(
            response.headers,
            self._default_calls_allowed,
            self._default_window_seconds,
        )

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error or (isinstance(payload, dict) and "error" in payload):
            raise self._to_error(response.status_code, payload, signal)

        if isinstance(payload, bool):
            payload = {"success": payload}
        return PlatformResponse(data=payload, signal=signal)

    @staticmethod
    def _to_error(status_code: int, payload: Any, signal: Optional[RateLimitSignal]):
        error = payload.get("error", {}) if isinstance(payload, dict) else {}
        code = error.get("code")
        kwargs = dict(
            code=code,
            subcode=error.get("error_subcode"),
            error_type=error.get("type"),
            status_code=status_code,
            user_title=error.get("error_user_title"),
            user_message=error.get("error_user_msg"),
            fbtrace_id=error.get("fbtrace_id"),
            payload=error,
            signal=signal,
        )
        message = error.get("message") or f"Platform returned HTTP {status_code}"
        if code in RATE_LIMIT_CODES or status_code == 429:
            retry_after = signal.reset_in_seconds if signal else None
            return PlatformRateLimitError(message, retry_after_seconds=retry_after, **kwargs)
        return PlatformAPIError(message, **kwargs)
