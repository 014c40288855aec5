import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, field_validator

from .constants import KickApiError, OnboardingError, PersistenceError
from .kick_api_client import KickApiClient
from .kick_auth_client import KickAuthClient
from .tenant import Tenant
from .tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)


class OnboardingRequest(BaseModel):
    """Body posted to the onboarding endpoint once a streamer has authorized the app."""
    code: str
    code_verifier: str
    redirect_uri: Optional[str] = None

    @field_validator("code", "code_verifier")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class OnboardingService:
    """
    Turns an authorization code into a running tenant.

    Every step is a gate: the code exchange, the broadcaster lookup, the
    registry write and finally activation (subscription plus timers). The
    sequence is not transactional; whatever is left half-done is picked up
    by the bot's reconciler.
    """

    def __init__(self, auth_client: KickAuthClient, registry: TenantRegistry,
                 client_factory: Callable[[Optional[str]], KickApiClient],
                 activate: Callable[[Tenant], Awaitable[bool]],
                 default_redirect_uri: str):
        self.auth_client = auth_client
        self.registry = registry
        self.client_factory = client_factory
        self.activate = activate
        self.default_redirect_uri = default_redirect_uri

    async def onboard(self, request: OnboardingRequest) -> Tenant:
        """
        Complete onboarding for one streamer.

        Raises:
            OnboardingError: With the HTTP status the caller should answer with
        """
        redirect_uri = request.redirect_uri or self.default_redirect_uri
        try:
            tokens = await self.auth_client.exchange_code_for_tokens(
                code=request.code,
                redirect_uri=redirect_uri,
                code_verifier=request.code_verifier,
            )
        except KickApiError as e:
            logger.error(f"Token exchange failed during onboarding: {e}")
            raise OnboardingError("token exchange failed", status=502) from e

        if not tokens.access_token or not tokens.refresh_token:
            logger.error("Token exchange during onboarding returned no refresh token.")
            raise OnboardingError("token exchange failed", status=502)

        client = self.client_factory(tokens.access_token)
        broadcaster_user_id, slug = await self._resolve_broadcaster(client)

        tenant = Tenant(broadcaster_user_id=broadcaster_user_id, slug=slug)
        existing = self.registry.get(broadcaster_user_id)
        if existing is not None:
            logger.info(f"Broadcaster {broadcaster_user_id} is already onboarded; replacing its credentials.")
            tenant.subscription_id = existing.subscription_id
        tenant.client = client
        tenant.apply_tokens(tokens)

        try:
            await self.registry.upsert(tenant)
        except PersistenceError as e:
            logger.error(f"Onboarded broadcaster {broadcaster_user_id} but could not persist: {e}")

        if not await self.activate(tenant):
            raise OnboardingError("failed to subscribe to chat events", status=502)

        logger.info(f"Onboarded streamer {tenant.display_name} ({broadcaster_user_id}).")
        return tenant

    async def _resolve_broadcaster(self, client: KickApiClient):
        try:
            channels = await client.get_channels()
        except KickApiError as e:
            logger.error(f"Channel lookup failed during onboarding: {e}")
            raise OnboardingError("unable to determine broadcaster", status=502) from e

        channel = channels[0] if isinstance(channels, list) and channels else None
        broadcaster_user_id = channel.get("broadcaster_user_id") if isinstance(channel, dict) else None
        if not isinstance(broadcaster_user_id, int) or isinstance(broadcaster_user_id, bool):
            logger.error(f"Channel lookup returned no broadcaster id: {channels}")
            raise OnboardingError("unable to determine broadcaster", status=502)
        return broadcaster_user_id, channel.get("slug")
