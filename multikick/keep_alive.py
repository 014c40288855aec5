import asyncio
import logging
from typing import Tuple

from .tenant import Tenant

logger = logging.getLogger(__name__)


class KeepAliveScheduler:
    """Posts a pair of chat messages into every tenant's channel on a fixed interval."""

    def __init__(self, interval_seconds: float, user_message: str, bot_message: str):
        self.interval_seconds = interval_seconds
        self.user_message = user_message
        self.bot_message = bot_message

    def schedule(self, tenant: Tenant) -> asyncio.Task:
        """Start (or restart) the tenant's keep-alive task."""
        if tenant.keep_alive_task is not None and not tenant.keep_alive_task.done():
            tenant.keep_alive_task.cancel()
        tenant.keep_alive_task = asyncio.create_task(self._keep_alive_loop(tenant),
                                                     name=f"keep-alive-{tenant.broadcaster_user_id}")
        return tenant.keep_alive_task

    async def _keep_alive_loop(self, tenant: Tenant) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.tick(tenant)
            except Exception as e:
                logger.error(f"Keep-alive tick failed for broadcaster {tenant.broadcaster_user_id}: {e}", exc_info=True)

    async def tick(self, tenant: Tenant) -> Tuple[bool, bool]:
        """
        Send both keep-alive messages. Each send is independent.

        Returns:
            (user message sent, bot message sent)
        """
        user_sent = await self._send(tenant, self.user_message, "user")
        bot_sent = await self._send(tenant, self.bot_message, "bot")
        if user_sent and bot_sent:
            logger.info(f"Keep-alive messages posted for broadcaster {tenant.broadcaster_user_id}.")
        return user_sent, bot_sent

    async def _send(self, tenant: Tenant, content: str, sender_type: str) -> bool:
        if tenant.client is None:
            logger.warning(f"Skipping {sender_type} keep-alive for broadcaster {tenant.broadcaster_user_id}: no API client")
            return False
        try:
            if sender_type == "user":
                await tenant.client.send_chat_message(content=content, type="user",
                                                      broadcaster_user_id=tenant.broadcaster_user_id)
            else:
                await tenant.client.send_chat_message(content=content, type="bot")
        except Exception as e:
            logger.error(f"Error during {sender_type} keep-alive for broadcaster {tenant.broadcaster_user_id}: {e}")
            return False
        return True
