"""
CRM API client
Authenticated JSON requests, cursor pagination and 429 backoff
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import aiohttp

from crmpulse.config import Settings, get_settings
from crmpulse.connectors.errors import ApiError, AuthFailure, TransientRateLimit, TransportError
from crmpulse.connectors.token_cache import TokenCache, static_token_provider
from crmpulse.utils.logger import log
from crmpulse.utils.retry import RetryPolicy, RetryStats, parse_retry_after

# Request-side cursor field; responses may carry nextCursor or paging.next.after
CURSOR_FIELD = "cursor"


def next_cursor(payload: Dict[str, Any]) -> Optional[str]:
    """Cursor for the following page, None on the last page"""
    cursor = payload.get("nextCursor")
    if cursor:
        return str(cursor)
    paging = payload.get("paging") or {}
    after = (paging.get("next") or {}).get("after")
    return str(after) if after else None


class CrmClient:
    """
    Rate-limited client for the CRM REST API.

    - Bearer auth from a TokenCache
    - HTTP 429: retried per RetryPolicy, honoring Retry-After
    - HTTP 401/403: AuthFailure, never retried
    - other non-2xx: ApiError(status, body)
    - network failures: TransportError
    """

    def __init__(
        self,
        token_cache: TokenCache,
        *,
        base_url: str = "https://api.hubapi.com",
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: int = 100,
    ):
        self.token_cache = token_cache
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_size = page_size
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

        self.request_count = 0
        self.retry_count = 0
        self.last_retry_stats: Optional[RetryStats] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "CrmClient":
        settings = settings or get_settings()
        return cls(
            TokenCache(static_token_provider(settings.crm_access_token)),
            base_url=settings.crm_base_url,
            session=session,
            timeout_seconds=settings.crm_timeout_seconds,
            retry_policy=RetryPolicy(
                max_retries=settings.crm_max_retries,
                base_delay=settings.crm_backoff_base_seconds,
            ),
            page_size=settings.crm_page_size,
        )

    async def __aenter__(self) -> "CrmClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one API call and return the decoded JSON body.

        Args:
            endpoint: Path relative to base_url (e.g. /crm/v3/objects/deals/search)
            method: HTTP method
            body: JSON body for POST requests
            params: Query string parameters

        Returns:
            Decoded response body ({} for empty responses)

        Raises:
            AuthFailure, TransientRateLimit, ApiError, TransportError
        """
        url = f"{self.base_url}{endpoint}"
        stats = RetryStats()
        self.last_retry_stats = stats
        retries = 0

        while True:
            headers = {
                "Authorization": f"Bearer {await self.token_cache.get()}",
                "Content-Type": "application/json",
            }
            status, response_headers, text = await self._send(method, url, headers, body, params)
            stats.record_attempt()

            if 200 <= status < 300:
                stats.mark_success()
                return _decode(text) or {}

            payload = _decode(text)
            error_body = payload if payload is not None else text

            if status in (401, 403):
                raise AuthFailure(status, error_body)

            if status != 429:
                raise ApiError(status, error_body)

            if not self.retry_policy.can_retry(retries):
                log.error(f"Rate limit persisted after {retries} retries on {method} {endpoint}")
                raise TransientRateLimit(error_body, retries)

            retries += 1
            delay = self.retry_policy.delay_for(
                retries, parse_retry_after(response_headers.get("Retry-After"))
            )
            stats.record_retry("429 Too Many Requests", delay)
            self.retry_count += 1
            log.warning(f"[Rate limit] {method} {endpoint}: waiting {delay:.1f}s before retry {retries}")
            await self.retry_policy.sleep(delay)

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ):
        self.request_count += 1
        try:
            async with self._get_session().request(
                method,
                url,
                json=body,
                params=params,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                text = await response.text()
                return response.status, response.headers, text
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

    async def fetch_all_pages(
        self,
        endpoint: str,
        method: str = "POST",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Follow the cursor until the API stops returning one.

        POST requests carry limit/cursor in the JSON body, GET requests in the
        query string. Pages are concatenated in the order received.
        """
        results: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            if method.upper() == "GET":
                page_params = {**(params or {}), "limit": self.page_size}
                if cursor:
                    page_params[CURSOR_FIELD] = cursor
                data = await self.request(endpoint, method, params=page_params)
            else:
                page_body = {**(body or {}), "limit": (body or {}).get("limit", self.page_size)}
                if cursor:
                    page_body[CURSOR_FIELD] = cursor
                data = await self.request(endpoint, method, body=page_body, params=params)

            results.extend(data.get("results") or [])
            cursor = next_cursor(data)
            if not cursor:
                return results


def _decode(text: str) -> Optional[Any]:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None
