import asyncio
import logging
from typing import Callable, Optional

from .constants import KickAuthError, PersistenceError
from .kick_api_client import KickApiClient
from .kick_auth_client import KickAuthClient, TokenResponse
from .tenant import DEFAULT_EXPIRES_IN, Tenant
from .tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """
    Keeps every tenant's access token fresh.

    Each tenant gets one perpetual refresh task that sleeps until shortly
    before its token expires, refreshes, persists the rotated refresh token
    and goes back to sleep. Tenants never share a task, so one tenant's
    failures cannot stall another's refreshes.
    """

    def __init__(self, auth_client: KickAuthClient, registry: TenantRegistry,
                 client_factory: Callable[[Optional[str]], KickApiClient],
                 safety_margin_seconds: float = 120,
                 minimum_delay_seconds: float = 30):
        self.auth_client = auth_client
        self.registry = registry
        self.client_factory = client_factory
        self.safety_margin_seconds = safety_margin_seconds
        self.minimum_delay_seconds = minimum_delay_seconds

    def compute_refresh_delay(self, expires_in: Optional[float]) -> float:
        """Seconds to wait before the next refresh for a token valid for `expires_in` seconds."""
        if expires_in is None:
            expires_in = DEFAULT_EXPIRES_IN
        return max(expires_in - self.safety_margin_seconds, self.minimum_delay_seconds)

    async def refresh(self, tenant: Tenant, persist: bool = True) -> TokenResponse:
        """
        Mint a new access token from the tenant's refresh token and persist the rotation.
        Startup passes persist=False and writes the store once for all tenants.

        Returns:
            The token endpoint's response

        Raises:
            KickAuthError: If the refresh token was rejected; not retried here
            KickApiError: If the token endpoint could not be reached
        """
        tokens = await self.auth_client.refresh_access_token(tenant.refresh_token)

        if not self.registry.is_current(tenant):
            logger.info(f"Broadcaster {tenant.broadcaster_user_id} was removed during refresh; discarding tokens.")
            return tokens

        tenant.apply_tokens(tokens)
        if tenant.client is None:
            tenant.client = self.client_factory(tenant.access_token)

        if not persist:
            return tokens
        try:
            await self.registry.persist()
        except PersistenceError as e:
            logger.error(f"Refreshed broadcaster {tenant.broadcaster_user_id} but could not persist: {e}")
        return tokens

    def schedule(self, tenant: Tenant) -> asyncio.Task:
        """Start (or restart) the tenant's refresh task."""
        if tenant.refresh_task is not None and not tenant.refresh_task.done():
            tenant.refresh_task.cancel()
        tenant.refresh_task = asyncio.create_task(self._refresh_loop(tenant),
                                                  name=f"refresh-{tenant.broadcaster_user_id}")
        return tenant.refresh_task

    async def _refresh_loop(self, tenant: Tenant) -> None:
        delay = self.compute_refresh_delay(tenant.expires_in)
        while True:
            logger.debug(f"Next token refresh for broadcaster {tenant.broadcaster_user_id} in {delay:.0f}s")
            await asyncio.sleep(delay)

            if not self.registry.is_current(tenant):
                return

            try:
                await self.refresh(tenant)
            except KickAuthError as e:
                tenant.needs_reauth = True
                logger.error(f"Refresh token for broadcaster {tenant.broadcaster_user_id} was rejected; "
                             f"re-onboard or remove this streamer. {e}")
                return
            except Exception as e:
                logger.error(f"Automatic refresh failed for broadcaster {tenant.broadcaster_user_id}: {e}",
                             exc_info=True)
                delay = self.minimum_delay_seconds
                continue

            logger.info(f"Refreshed token for broadcaster {tenant.broadcaster_user_id}.")
            delay = self.compute_refresh_delay(tenant.expires_in)
