import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .constants import DispatchError, KickApiError
from .event_models import ChatMessageEvent
from .tenant import Tenant

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Tenant, ChatMessageEvent, str], Awaitable[None]]

TITLE_FAILED_REPLY = "Failed to update title. Check logs."


class CommandProcessor:
    """
    Turns chat messages into bot actions.

    Matching is done on the trimmed, lower-cased content; arguments keep the
    casing the user typed. Nothing is remembered between messages.
    """

    def __init__(self):
        self.handled_commands: Dict[str, CommandHandler] = {}
        self.add_command_handler("!ping", self.handle_ping)
        self.add_command_handler("!title", self.handle_title)

    def add_command_handler(self, command: str, handler: CommandHandler) -> None:
        """
        Register a handler for a chat command.

        :param command: Command including its prefix, e.g. "!ping"
        :param handler: Async function called with (tenant, message, argument)
        """
        self.handled_commands[command.lower()] = handler

    def parse(self, content: Optional[str]) -> Optional[Tuple[str, str]]:
        """
        Find the command in a chat message.

        Returns:
            (command, argument) or None when the message is not a known command
        """
        stripped = (content or "").strip()
        if not stripped:
            return None
        lowered = stripped.lower()
        for command in self.handled_commands:
            if lowered == command:
                return command, ""
            if lowered.startswith(command + " "):
                return command, stripped[len(command) + 1:].strip()
        return None

    async def handle(self, tenant: Tenant, message: ChatMessageEvent) -> Optional[str]:
        """
        Run the command contained in `message`, if any.

        Returns:
            The command that was matched, or None
        """
        parsed = self.parse(message.content)
        if parsed is None:
            return None
        command, argument = parsed
        logger.info(f"Command {command} from {message.sender_username} in channel {tenant.display_name}")
        await self.handled_commands[command](tenant, message, argument)
        return command

    async def handle_ping(self, tenant: Tenant, message: ChatMessageEvent, argument: str) -> None:
        # exact match only
        if argument:
            return
        await self.send_reply(tenant, "!pong", message.message_id)

    async def handle_title(self, tenant: Tenant, message: ChatMessageEvent, argument: str) -> None:
        if not argument:
            return
        try:
            await self.update_title(tenant, argument)
        except DispatchError as e:
            logger.error(f"Error updating title for broadcaster {tenant.broadcaster_user_id}: {e}")
            await self.send_reply(tenant, TITLE_FAILED_REPLY, message.message_id)
            return
        await self.send_reply(tenant, f"Updated title to: {argument}", message.message_id)
        logger.info(f"Updated title for broadcaster {tenant.broadcaster_user_id}.")

    async def update_title(self, tenant: Tenant, title: str) -> None:
        if tenant.client is None:
            raise DispatchError(f"Broadcaster {tenant.broadcaster_user_id} has no API client yet")
        try:
            await tenant.client.update_channel_metadata(stream_title=title)
        except (KickApiError, ValueError) as e:
            raise DispatchError(str(e)) from e

    async def send_reply(self, tenant: Tenant, content: str, reply_to_message_id: Optional[str]) -> bool:
        """
        Reply in the tenant's chat as the bot. Best-effort: failures are logged
        and reported through the return value.
        """
        if tenant.client is None:
            logger.error(f"Cannot reply for broadcaster {tenant.broadcaster_user_id}: no API client")
            return False
        try:
            await tenant.client.send_chat_message(content=content, type="bot",
                                                  reply_to_message_id=reply_to_message_id)
        except Exception as e:
            logger.error(f"Error sending reply for broadcaster {tenant.broadcaster_user_id}: {e}")
            return False
        return True
