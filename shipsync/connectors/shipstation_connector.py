"""
ShipStation API connector.

Endpoints used:
  - GET /shipments     - paginated shipment list, filtered by createDate
  - GET /fulfillments  - paginated fulfillment list (orders shipped outside ShipStation)
  - GET /warehouses    - ship-from locations (array)
  - GET /stores        - connected selling channels (array)

Every request goes through fetch(), which applies a fixed timeout and retries
transport errors, 429 and 5xx with exponential backoff plus jitter. fetch()
never raises: exhausted retries and terminal statuses come back as an
ApiResult carrying an ApiError.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import asyncio
import json

import aiohttp

from shipsync.connectors.base_connector import BaseConnector
from shipsync.config import get_settings
from shipsync.utils.logger import log
from shipsync.utils.retry import RetryStats, calculate_backoff, is_retryable_status

settings = get_settings()

SHIPSTATION_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ApiError(Exception):
    """Terminal failure of one API call (after any retries)."""

    def __init__(self, message: str, status_code: int = 0, attempts: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.attempts = attempts


@dataclass
class ApiResult:
    success: bool
    data: Any = None
    status_code: int = 0
    error: Optional[ApiError] = None
    attempts: int = 0
    retry_delays: List[float] = field(default_factory=list)


def validate_api_response(data: Any, expected_type: str) -> Tuple[bool, Optional[str]]:
    """
    Check a parsed body has the shape a caller expects before trusting it.

    expected_type:
        shipments / fulfillments - object with an array field of that name
        warehouses / stores      - top-level array
    """
    if data is None:
        return False, "Response data is null"
    if expected_type in ("warehouses", "stores"):
        if not isinstance(data, list):
            return False, "Response is not an array"
        return True, None
    if not isinstance(data, dict):
        return False, "Response is not an object"
    if expected_type in ("shipments", "fulfillments"):
        if expected_type not in data:
            return False, f"Missing {expected_type} property"
        if not isinstance(data[expected_type], list):
            return False, f"{expected_type} is not an array"
    return True, None


def _looks_like_json(body: str) -> bool:
    stripped = body.strip() if body else ""
    return stripped.startswith("{") or stripped.startswith("[")


class ShipStationConnector(BaseConnector):
    """Connector for the ShipStation v1 REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        retry_jitter_seconds: Optional[float] = None,
        rate_limit_delay_seconds: Optional[float] = None,
    ):
        super().__init__("ShipStation")
        self.api_key = settings.shipstation_api_key if api_key is None else api_key
        self.api_secret = settings.shipstation_api_secret if api_secret is None else api_secret
        self.base_url = (base_url or settings.shipstation_api_base_url).rstrip("/")
        self.headers = {"Accept": "application/json"}

        self.timeout_seconds = settings.api_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.RETRY_MAX_RETRIES = settings.api_max_retries if max_retries is None else max_retries
        self.RETRY_BASE_DELAY = settings.api_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
        self.RETRY_JITTER = settings.api_retry_jitter_seconds if retry_jitter_seconds is None else retry_jitter_seconds
        self.rate_limit_delay_seconds = (
            settings.api_rate_limit_delay_seconds if rate_limit_delay_seconds is None else rate_limit_delay_seconds
        )

        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                auth=aiohttp.BasicAuth(self.api_key, self.api_secret),
                headers=self.headers,
            )
        return self._session

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Any],
    ) -> Tuple[int, str]:
        session = self._get_session()
        async with session.request(
            method,
            url,
            params=params,
            json=json_body,
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
        ) as response:
            return response.status, await response.text()

    def _parse_body(self, body: str) -> Any:
        """JSON when the body looks like JSON; otherwise (or on a parse error) the raw text."""
        if not _looks_like_json(body):
            return body
        try:
            return json.loads(body)
        except ValueError:
            log.warning("Response is not valid JSON, returning raw body")
            return body

    async def fetch(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        json_body: Optional[Any] = None,
    ) -> ApiResult:
        """
        Issue one API call with bounded retries.

        Retries transport exceptions, 429 and >=500 up to RETRY_MAX_RETRIES
        times, waiting base_delay * 2^retry + jitter before each resend.
        Any other non-200 status is terminal.
        """
        if not url.startswith("http"):
            url = f"{self.base_url}/{url.lstrip('/')}"
        stats = RetryStats()
        max_retries = self.RETRY_MAX_RETRIES
        short_url = url[:100]

        for retry in range(max_retries + 1):
            log.debug(f"API Request: {short_url} (attempt {retry + 1}/{max_retries + 1})")
            try:
                status, body = await self._send(method, url, params, json_body)
            except Exception as e:
                message = f"{type(e).__name__}: {e}"
                log.bind(url=short_url, attempt=retry + 1).error(f"API call exception: {message}")
                if retry < max_retries:
                    stats.record_attempt(error=message, delay=await self._backoff(retry, message))
                    continue
                stats.record_attempt(error=message)
                return self._failure(f"API call failed: {message}", 0, stats)

            if status == 200:
                stats.record_attempt()
                stats.mark_success()
                self._record_request(retries=stats.attempts - 1, failed=False)
                if stats.attempts > 1:
                    log.info(
                        f"API call succeeded on attempt {stats.attempts} "
                        f"after {stats.total_delay_seconds:.1f}s total delay"
                    )
                return ApiResult(
                    success=True,
                    data=self._parse_body(body),
                    status_code=status,
                    attempts=stats.attempts,
                    retry_delays=list(stats.delays),
                )

            log.bind(url=short_url, status_code=status).warning(f"API returned non-200 status: {status}")
            if is_retryable_status(status) and retry < max_retries:
                reason = f"Status {status}"
                stats.record_attempt(error=reason, delay=await self._backoff(retry, reason))
                continue
            stats.record_attempt(error=f"Status {status}")
            return self._failure(f"API returned status {status}", status, stats)

        # Loop always returns; kept for type checkers
        return self._failure("Retry exhausted", 0, stats)

    async def _backoff(self, retry: int, reason: str) -> float:
        delay = calculate_backoff(retry, base_delay=self.RETRY_BASE_DELAY, jitter_seconds=self.RETRY_JITTER)
        log.bind(reason=reason).info(
            f"Retrying API call ({retry + 1}/{self.RETRY_MAX_RETRIES}) after {delay * 1000:.0f}ms"
        )
        await self._sleep(delay)
        return delay

    def _failure(self, message: str, status_code: int, stats: RetryStats) -> ApiResult:
        self._record_request(retries=max(stats.attempts - 1, 0), failed=True)
        return ApiResult(
            success=False,
            status_code=status_code,
            error=ApiError(message, status_code=status_code, attempts=stats.attempts),
            attempts=stats.attempts,
            retry_delays=list(stats.delays),
        )

    # ShipStation endpoints

    async def validate_connection(self) -> bool:
        if not self.api_key or not self.api_secret:
            log.warning("ShipStation API credentials not configured")
            return False
        result = await self.fetch("/warehouses")
        if result.success:
            log.info("Connected to ShipStation API")
        else:
            log.error(f"ShipStation connection check failed: {result.error}")
        return result.success

    async def fetch_page(
        self,
        kind: str,
        start: datetime,
        end: datetime,
        page: int = 1,
        page_size: int = 500,
    ) -> ApiResult:
        """
        Fetch one page of shipments or fulfillments created in [start, end],
        oldest first. A body that fails shape validation is a failed result.
        """
        params = {
            "createDateStart": start.strftime(SHIPSTATION_DATE_FORMAT),
            "createDateEnd": end.strftime(SHIPSTATION_DATE_FORMAT),
            "page": str(page),
            "pageSize": str(page_size),
            "sortBy": "CreateDate",
            "sortDir": "ASC",
        }
        if kind == "shipments":
            params["includeShipmentItems"] = "true"

        result = await self.fetch(f"/{kind}", params=params)
        if self.rate_limit_delay_seconds:
            await self._sleep(self.rate_limit_delay_seconds)
        if not result.success:
            return result

        valid, reason = validate_api_response(result.data, kind)
        if not valid:
            log.bind(kind=kind, page=page).error(f"Invalid {kind} response: {reason}")
            return ApiResult(
                success=False,
                data=result.data,
                status_code=result.status_code,
                error=ApiError(f"Invalid response: {reason}", result.status_code, result.attempts),
                attempts=result.attempts,
                retry_delays=result.retry_delays,
            )
        return result

    async def fetch_shipments_page(self, start: datetime, end: datetime, page: int = 1, page_size: int = 500) -> ApiResult:
        return await self.fetch_page("shipments", start, end, page, page_size)

    async def fetch_fulfillments_page(self, start: datetime, end: datetime, page: int = 1, page_size: int = 500) -> ApiResult:
        return await self.fetch_page("fulfillments", start, end, page, page_size)

    async def _fetch_list(self, kind: str) -> List[Dict[str, Any]]:
        result = await self.fetch(f"/{kind}")
        if not result.success:
            log.error(f"Failed to fetch {kind}: {result.error}")
            return []
        valid, reason = validate_api_response(result.data, kind)
        if not valid:
            log.error(f"Invalid {kind} response: {reason}")
            return []
        return result.data

    async def fetch_warehouses(self) -> List[Dict[str, Any]]:
        return await self._fetch_list("warehouses")

    async def fetch_stores(self) -> List[Dict[str, Any]]:
        return await self._fetch_list("stores")
