import asyncio
import logging
from typing import Callable, List, Optional

import aiohttp

from .command_processor import CommandProcessor
from .config import MultiStreamConfig
from .constants import KickApiError, KickAuthError, PersistenceError
from .event_router import EventRouter
from .keep_alive import KeepAliveScheduler
from .kick_api_client import KickApiClient
from .kick_auth_client import KickAuthClient
from .kick_event_manager import KickEventManager
from .kick_signature_verifier import KickSignatureVerifier
from .onboarding import OnboardingRequest, OnboardingService
from .tenant import Tenant
from .tenant_registry import TenantRegistry
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


class MultiStreamBot:
    """
    One bot process serving many Kick channels.

    Wires the shared collaborators together and owns the lifecycle of every
    tenant: startup initialization, onboarding activation, periodic
    reconciliation, removal and shutdown.
    """

    def __init__(self, config: MultiStreamConfig,
                 http_session: Optional[aiohttp.ClientSession] = None,
                 auth_client: Optional[KickAuthClient] = None,
                 client_factory: Optional[Callable[[Optional[str]], KickApiClient]] = None):
        self.config = config
        self.http_session = http_session
        self._owns_session = False
        self._is_active = False
        self.reconcile_task: Optional[asyncio.Task] = None

        self.auth_client = auth_client or KickAuthClient(
            client_id=config.client_id,
            client_secret=config.client_secret,
            base_url=config.oauth_base_url,
            session=http_session,
            timeout=config.request_timeout_seconds,
        )
        self._client_factory = client_factory

        # Token-less client for app level calls such as the public key
        self.app_client = KickApiClient(session=http_session, base_url=config.api_base_url,
                                        timeout=config.request_timeout_seconds)
        self.signature_verifier = KickSignatureVerifier(api_client=self.app_client, app_secret=config.app_secret)

        self.registry = TenantRegistry(config.store_path)
        self.token_manager = TokenLifecycleManager(
            self.auth_client, self.registry, self.create_client,
            safety_margin_seconds=config.refresh_safety_margin_seconds,
            minimum_delay_seconds=config.minimum_refresh_delay_seconds,
        )
        self.keep_alive = KeepAliveScheduler(config.keep_alive_interval_seconds,
                                             config.keep_alive_user_message,
                                             config.keep_alive_bot_message)
        self.event_manager = KickEventManager()
        self.command_processor = CommandProcessor()
        self.router = EventRouter(self.registry, self.command_processor)
        self.onboarding = OnboardingService(self.auth_client, self.registry, self.create_client,
                                            self.activate_tenant, config.redirect_uri)

    @property
    def is_active(self) -> bool:
        return self._is_active

    def create_client(self, access_token: Optional[str]) -> KickApiClient:
        """Build an API client for one tenant on the shared session."""
        if self._client_factory is not None:
            return self._client_factory(access_token)
        return KickApiClient(access_token=access_token, session=self.http_session,
                             base_url=self.config.api_base_url,
                             timeout=self.config.request_timeout_seconds)

    async def start(self) -> None:
        """
        Bring every stored tenant back online.

        Raises:
            KickApiError: If the webhook public key cannot be fetched
            PersistenceError: If the tenant store exists but is unreadable
        """
        logger.info("Starting multi-stream bot...")
        if self.http_session is None or self.http_session.closed:
            self.http_session = aiohttp.ClientSession()
            self._owns_session = True
            logger.info("aiohttp.ClientSession created.")
        if self.auth_client.session is None:
            self.auth_client.session = self.http_session
        self.app_client.session = self.http_session

        await self.signature_verifier.fetch_public_key()

        tenants = [Tenant.from_record(record) for record in self.registry.load()]
        # Every record stays registered, even if it fails to come up below
        for tenant in tenants:
            self.registry.restore(tenant)
        logger.info(f"Loaded {len(tenants)} streamers from {self.registry.store_path}")

        results = await asyncio.gather(*(self.initialize_tenant(t) for t in tenants), return_exceptions=True)
        for tenant, result in zip(tenants, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to initialize streamer {tenant.display_name}: {result}", exc_info=result)

        if tenants:
            try:
                await self.registry.persist()
            except PersistenceError as e:
                logger.error(f"Could not persist tenant store after startup: {e}")

        self._is_active = True
        self.reconcile_task = asyncio.create_task(self._reconcile_loop(), name="reconcile")
        ready = sum(1 for r in results if r is True)
        logger.info(f"Multi-stream bot running for {ready}/{len(tenants)} streamers.")

    async def initialize_tenant(self, tenant: Tenant) -> bool:
        """Refresh, subscribe and start timers for a tenant restored from disk."""
        if not tenant.refresh_token:
            tenant.needs_reauth = True
            logger.warning(f"Streamer {tenant.display_name} has no refresh token; re-onboard it.")
            return False
        try:
            await self.token_manager.refresh(tenant, persist=False)
        except KickAuthError as e:
            tenant.needs_reauth = True
            logger.error(f"Refresh token for streamer {tenant.display_name} was rejected; re-onboard it. {e}")
            return False
        except KickApiError as e:
            logger.error(f"Could not refresh streamer {tenant.display_name}; will retry on reconcile. {e}")
            return False
        return await self.activate_tenant(tenant, persist=False)

    async def activate_tenant(self, tenant: Tenant, persist: bool = True) -> bool:
        """
        Provision the chat subscription and start the tenant's timers.

        Returns:
            False if the subscription could not be provisioned. The timers are
            started either way so the tokens stay fresh for a later retry.
        """
        subscribed = await self.ensure_subscription(tenant, persist=persist)
        if not self.registry.is_current(tenant):
            return False
        self.token_manager.schedule(tenant)
        self.keep_alive.schedule(tenant)
        logger.info(f"Streamer {tenant.display_name} is active (subscription {tenant.subscription_id}).")
        return subscribed

    async def ensure_subscription(self, tenant: Tenant, persist: bool = True) -> bool:
        if tenant.client is None:
            logger.warning(f"Cannot subscribe streamer {tenant.display_name}: no API client yet")
            return False
        try:
            subscription_id = await self.event_manager.ensure_chat_subscription(tenant.client,
                                                                                tenant.broadcaster_user_id)
        except KickApiError as e:
            logger.error(f"Failed to provision chat subscription for streamer {tenant.display_name}: {e}")
            return False

        if not self.registry.is_current(tenant):
            logger.info(f"Streamer {tenant.display_name} was replaced or removed while subscribing.")
            return False

        if subscription_id != tenant.subscription_id:
            try:
                await self.registry.set_subscription(tenant, subscription_id, persist=persist)
            except PersistenceError as e:
                logger.error(f"Subscribed streamer {tenant.display_name} but could not persist: {e}")
        return True

    async def reconcile(self) -> List[int]:
        """
        Repair tenants left half-initialized: no access token, no subscription,
        or a refresh or keep-alive task that is not running.

        Returns:
            Broadcaster ids that were touched
        """
        repaired = []
        for tenant in self.registry.all():
            if tenant.needs_reauth:
                continue
            needs_work = (tenant.client is None or not tenant.subscription_id
                          or not tenant.has_refresh_task or not tenant.has_keep_alive_task)
            if not needs_work:
                continue
            repaired.append(tenant.broadcaster_user_id)
            try:
                if tenant.client is None or tenant.access_token is None:
                    await self.token_manager.refresh(tenant)
                if not self.registry.is_current(tenant):
                    continue
                if not tenant.subscription_id:
                    await self.ensure_subscription(tenant)
                if not tenant.has_refresh_task:
                    self.token_manager.schedule(tenant)
                if not tenant.has_keep_alive_task:
                    self.keep_alive.schedule(tenant)
            except KickAuthError as e:
                tenant.needs_reauth = True
                logger.error(f"Refresh token for streamer {tenant.display_name} was rejected; re-onboard it. {e}")
            except KickApiError as e:
                logger.error(f"Reconcile failed for streamer {tenant.display_name}: {e}")
        if repaired:
            logger.info(f"Reconciled streamers: {repaired}")
        return repaired

    async def _reconcile_loop(self) -> None:
        while self._is_active:
            try:
                await asyncio.sleep(self.config.reconcile_interval_seconds)
                await self.reconcile()
            except asyncio.CancelledError:
                logger.info("Reconcile task cancelled.")
                raise
            except Exception as e:
                logger.error(f"Error during reconcile: {e}", exc_info=True)

    async def onboard(self, request: OnboardingRequest) -> Tenant:
        return await self.onboarding.onboard(request)

    async def remove_tenant(self, broadcaster_user_id: int, unsubscribe: bool = True,
                            revoke: bool = False) -> Optional[Tenant]:
        """
        Offboard a streamer. Its timers stop immediately; unsubscribing and
        revoking are best-effort.

        Returns:
            The removed tenant, or None if it was not registered
        """
        tenant = self.registry.get(broadcaster_user_id)
        if tenant is None:
            return None

        try:
            await self.registry.remove(broadcaster_user_id)
        except PersistenceError as e:
            logger.error(f"Removed streamer {tenant.display_name} but could not persist: {e}")

        if unsubscribe and tenant.client is not None and tenant.subscription_id:
            try:
                await self.event_manager.clear_subscriptions(tenant.client, broadcaster_user_id,
                                                             [tenant.subscription_id])
            except KickApiError as e:
                logger.error(f"Failed to unsubscribe removed streamer {tenant.display_name}: {e}")

        if revoke and tenant.refresh_token:
            try:
                await self.auth_client.revoke_token(tenant.refresh_token, token_type_hint="refresh_token")
            except KickApiError as e:
                logger.error(f"Failed to revoke token of removed streamer {tenant.display_name}: {e}")

        logger.info(f"Removed streamer {tenant.display_name} ({broadcaster_user_id}).")
        return tenant

    async def refresh_public_key(self) -> None:
        await self.signature_verifier.refresh_public_key()

    async def shutdown(self) -> None:
        """Stop every timer and close sessions the bot created."""
        logger.info("Initiating bot shutdown...")
        self._is_active = False

        if self.reconcile_task is not None and not self.reconcile_task.done():
            self.reconcile_task.cancel()
            try:
                await self.reconcile_task
            except asyncio.CancelledError:
                pass
        self.reconcile_task = None

        pending = []
        for tenant in self.registry.all():
            pending.extend(t for t in (tenant.refresh_task, tenant.keep_alive_task) if t is not None)
            tenant.cancel_tasks()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.auth_client.close()
        await self.app_client.close()
        if self._owns_session and self.http_session is not None and not self.http_session.closed:
            await self.http_session.close()
            logger.info("aiohttp.ClientSession closed.")
        self.http_session = None
        self._owns_session = False
        logger.info("Bot shutdown complete.")
