"""
Access token cache

The token lives on a TokenCache instance owned by the client, never in a
module-level global. Providers return an AccessToken; a token without an
expiry (private app tokens) is fetched once and reused.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from crmpulse.connectors.errors import ConfigurationError
from crmpulse.utils.helpers import utc_now
from crmpulse.utils.logger import log


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        if self.expires_at is None:
            return False
        return now + margin >= self.expires_at


TokenProvider = Callable[[], Union[AccessToken, Awaitable[AccessToken]]]


def static_token_provider(token: str) -> TokenProvider:
    """Provider for a long-lived private app token"""

    def provide() -> AccessToken:
        if not token:
            raise ConfigurationError(
                "CRM access token is not configured. Set CRM_ACCESS_TOKEN in .env "
                "or as an environment variable."
            )
        return AccessToken(value=token)

    return provide


class TokenCache:
    """Holds the current bearer token and refreshes it on expiry"""

    def __init__(
        self,
        provider: TokenProvider,
        refresh_margin: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._provider = provider
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self.refresh_count = 0

    @property
    def token(self) -> Optional[AccessToken]:
        return self._token

    async def get(self) -> str:
        """Current token value, refreshing first if missing or about to expire"""
        if self._token is None or self._token.is_expired(self._clock(), self._refresh_margin):
            await self.refresh()
        return self._token.value

    async def refresh(self) -> AccessToken:
        result = self._provider()
        if asyncio.iscoroutine(result):
            result = await result
        self._token = result
        self.refresh_count += 1
        if result.expires_at is not None:
            log.debug(f"CRM token refreshed, expires at {result.expires_at.isoformat()}")
        return result

    def invalidate(self):
        self._token = None
