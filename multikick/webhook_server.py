import datetime
import hmac
import json
import logging
from typing import Optional

from aiohttp import web
from pydantic import BaseModel, ValidationError

from .config import MultiStreamConfig
from .constants import (
    HEADER_APP_SECRET,
    HEADER_EVENT_TYPE,
    HEADER_EVENT_VERSION,
    HEADER_SUBSCRIPTION_ID,
    OnboardingError,
    WebhookAuthenticationError,
)
from .kick_signature_verifier import get_header
from .multi_stream_bot import MultiStreamBot
from .onboarding import OnboardingRequest

logger = logging.getLogger(__name__)


class RemoveStreamerRequest(BaseModel):
    broadcaster_user_id: int
    revoke: bool = False


class MultiStreamWebhookServer:
    """
    HTTP surface of the bot: Kick webhook deliveries, streamer onboarding and
    removal, and a health check.
    """

    def __init__(self, bot: MultiStreamBot, config: MultiStreamConfig):
        self.bot = bot
        self.config = config
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        """Create and configure the web application"""
        app = web.Application()
        app.router.add_post(self.config.webhook_path, self.handle_kick_events)
        app.router.add_post(self.config.add_streamer_path, self.handle_add_streamer)
        app.router.add_post(self.config.remove_streamer_path, self.handle_remove_streamer)
        app.router.add_get('/health', self.handle_health)
        return app

    def _check_app_secret(self, request: web.Request) -> Optional[web.Response]:
        """Returns an error response when the caller is not allowed in, otherwise None."""
        if not self.config.app_secret:
            logger.warning(f"Rejected {request.path}: KICK_APP_SECRET is not configured.")
            return web.Response(status=403, text="streamer management disabled")
        provided = get_header(request.headers, HEADER_APP_SECRET)
        if not provided or not hmac.compare_digest(provided.encode(), self.config.app_secret.encode()):
            logger.warning(f"Rejected {request.path}: invalid secret.")
            return web.Response(status=401, text="invalid secret")
        return None

    async def handle_kick_events(self, request: web.Request) -> web.Response:
        """Handle Kick webhook deliveries. Anything past authentication is acknowledged with 200."""
        body = await request.read()

        try:
            self.bot.signature_verifier.authenticate(request.headers, body)
        except WebhookAuthenticationError as e:
            return web.Response(status=401, text=str(e))

        event_type = get_header(request.headers, HEADER_EVENT_TYPE)
        subscription_id = get_header(request.headers, HEADER_SUBSCRIPTION_ID)
        event_version = get_header(request.headers, HEADER_EVENT_VERSION)
        logger.debug(f"Received Kick event {event_type} (version: {event_version}) for subscription {subscription_id}")

        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse webhook JSON: {e}")
            return web.Response(status=200, text="ok")

        try:
            await self.bot.router.dispatch(event_type, subscription_id, payload)
        except Exception as e:
            logger.error(f"Error dispatching {event_type} event: {e}", exc_info=True)
        return web.Response(status=200, text="ok")

    async def handle_add_streamer(self, request: web.Request) -> web.Response:
        """Complete onboarding for a streamer who just authorized the app."""
        rejected = self._check_app_secret(request)
        if rejected is not None:
            return rejected

        try:
            body = await request.json()
        except (UnicodeDecodeError, json.JSONDecodeError):
            return web.Response(status=400, text="invalid JSON")

        try:
            onboarding_request = OnboardingRequest.model_validate(body)
        except ValidationError:
            return web.Response(status=400, text="code and code_verifier required")

        try:
            tenant = await self.bot.onboard(onboarding_request)
        except OnboardingError as e:
            return web.Response(status=e.status, text=str(e))
        except Exception as e:
            logger.error(f"Unexpected error during onboarding: {e}", exc_info=True)
            return web.Response(status=500, text="onboarding failed")

        return web.json_response({"ok": True, "broadcasterUserId": tenant.broadcaster_user_id,
                                  "slug": tenant.slug})

    async def handle_remove_streamer(self, request: web.Request) -> web.Response:
        rejected = self._check_app_secret(request)
        if rejected is not None:
            return rejected

        try:
            body = await request.json()
        except (UnicodeDecodeError, json.JSONDecodeError):
            return web.Response(status=400, text="invalid JSON")

        try:
            remove_request = RemoveStreamerRequest.model_validate(body)
        except ValidationError:
            return web.Response(status=400, text="broadcaster_user_id required")

        try:
            tenant = await self.bot.remove_tenant(remove_request.broadcaster_user_id,
                                                  revoke=remove_request.revoke)
        except Exception as e:
            logger.error(f"Unexpected error removing streamer: {e}", exc_info=True)
            return web.Response(status=500, text="removal failed")

        if tenant is None:
            return web.Response(status=404, text="unknown broadcaster")
        return web.json_response({"ok": True, "broadcasterUserId": tenant.broadcaster_user_id})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Simple health check endpoint"""
        tenants = self.bot.registry.all()
        health_data = {
            "status": "ok" if self.bot.is_active else "starting",
            "service": "multikick",
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "streamers": len(tenants),
            "needs_reauth": [t.broadcaster_user_id for t in tenants if t.needs_reauth],
        }
        return web.json_response(health_data, status=200)

    async def start(self) -> None:
        app = self.create_app()
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host=self.config.host, port=self.config.port)
        try:
            await self.site.start()
        except OSError:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            raise
        logger.info(f"Webhook server listening on {self.config.host}:{self.config.port} "
                    f"(events at {self.config.webhook_path}, onboarding at {self.config.add_streamer_path})")

    async def stop(self) -> None:
        if self.site:
            try:
                await self.site.stop()
                logger.info("Webhook server stopped.")
            except Exception as e:
                logger.error(f"Error stopping webhook site: {e}", exc_info=True)
            self.site = None

        if self.runner:
            try:
                await self.runner.cleanup()
                logger.info("Webhook runner cleaned up.")
            except Exception as e:
                logger.error(f"Error cleaning up webhook runner: {e}", exc_info=True)
            self.runner = None
