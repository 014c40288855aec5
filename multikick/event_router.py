import logging
from typing import Any, Optional

from .command_processor import CommandProcessor
from .constants import CHAT_MESSAGE_EVENT
from .event_models import ChatMessageEvent, parse_kick_event_payload
from .tenant import Tenant
from .tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)


class EventRouter:
    """Maps a verified webhook delivery to its tenant and hands it to the command processor."""

    def __init__(self, registry: TenantRegistry, command_processor: CommandProcessor):
        self.registry = registry
        self.command_processor = command_processor

    def route(self, subscription_id: Optional[str]) -> Optional[Tenant]:
        return self.registry.by_subscription(subscription_id)

    async def dispatch(self, event_type: Optional[str], subscription_id: Optional[str], payload: Any) -> bool:
        """
        Dispatch one delivery.

        Returns:
            True if a tenant's command processor saw the event. A False result
            is not an error; the delivery should still be acknowledged.
        """
        if event_type != CHAT_MESSAGE_EVENT:
            logger.debug(f"Ignoring webhook event of type {event_type}")
            return False

        tenant = self.route(subscription_id)
        if tenant is None:
            logger.warning(f"No streamer mapped for subscription {subscription_id}")
            return False

        message = parse_kick_event_payload(event_type, payload)
        if not isinstance(message, ChatMessageEvent):
            logger.warning(f"Could not parse {event_type} payload for broadcaster {tenant.broadcaster_user_id}: {payload}")
            return False

        await self.command_processor.handle(tenant, message)
        return True
