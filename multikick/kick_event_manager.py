import logging
from typing import Any, Dict, List, Optional

from .constants import CHAT_MESSAGE_EVENT, CHAT_MESSAGE_EVENT_VERSION, KickApiError
from .kick_api_client import KickApiClient

logger = logging.getLogger(__name__)


class KickEventManager:
    """
    Manages the webhook event subscriptions of each tenant.

    Stateless across tenants: every call takes the tenant's API client, whose
    token decides which broadcaster the subscription belongs to.
    """

    def __init__(self, event_name: str = CHAT_MESSAGE_EVENT, event_version: int = CHAT_MESSAGE_EVENT_VERSION):
        self.event_name = event_name
        self.event_version = event_version

    def _matches(self, entry: Any, broadcaster_user_id: int) -> bool:
        if not isinstance(entry, dict) or not entry.get("id"):
            return False
        name = entry.get("event") or entry.get("name")
        owner = entry.get("broadcaster_user_id")
        return (name == self.event_name
                and entry.get("version") == self.event_version
                and (owner is None or owner == broadcaster_user_id))

    async def list_subscriptions(self, client: KickApiClient, broadcaster_user_id: int) -> List[Dict[str, Any]]:
        """Lists the event subscriptions belonging to one broadcaster."""
        existing = await client.list_event_subscriptions(broadcaster_user_id=broadcaster_user_id)
        if not isinstance(existing, list):
            return []
        return [sub for sub in existing
                if isinstance(sub, dict) and sub.get("broadcaster_user_id") in (None, broadcaster_user_id)]

    async def find_subscription(self, client: KickApiClient, broadcaster_user_id: int) -> Optional[str]:
        for entry in await self.list_subscriptions(client, broadcaster_user_id):
            if self._matches(entry, broadcaster_user_id):
                return entry["id"]
        return None

    async def ensure_chat_subscription(self, client: KickApiClient, broadcaster_user_id: int) -> str:
        """
        Return the id of the broadcaster's chat subscription, creating it only
        when no matching one exists.

        Raises:
            KickApiError: If listing or creating fails
        """
        existing_id = await self.find_subscription(client, broadcaster_user_id)
        if existing_id:
            logger.info(f"Reusing {self.event_name} subscription {existing_id} for broadcaster {broadcaster_user_id}.")
            return existing_id

        created = await client.create_event_subscriptions(
            events=[{"name": self.event_name, "version": self.event_version}],
            broadcaster_user_id=broadcaster_user_id,
            method="webhook",
        )
        result = created[0] if isinstance(created, list) and created else None
        if not isinstance(result, dict) or not result.get("subscription_id") or result.get("error"):
            logger.error(f"Failed to subscribe broadcaster {broadcaster_user_id} to {self.event_name}: {created}")
            raise KickApiError(f"Failed to create {self.event_name} subscription for broadcaster {broadcaster_user_id}.",
                               body=created)

        logger.info(f"Created {self.event_name} subscription {result['subscription_id']} "
                    f"for broadcaster {broadcaster_user_id}.")
        return result["subscription_id"]

    async def clear_subscriptions(self, client: KickApiClient, broadcaster_user_id: int,
                                  subscription_ids: Optional[List[str]] = None) -> List[str]:
        """
        Delete the given subscriptions, or every subscription of the broadcaster
        when no ids are given. Returns the ids that were deleted.
        """
        if subscription_ids is None:
            subscription_ids = [sub["id"] for sub in await self.list_subscriptions(client, broadcaster_user_id)
                                if sub.get("id")]
        if not subscription_ids:
            logger.info(f"No subscriptions to clear for broadcaster {broadcaster_user_id}.")
            return []
        await client.delete_event_subscriptions(subscription_ids)
        logger.info(f"Unsubscribed broadcaster {broadcaster_user_id} from {subscription_ids}")
        return list(subscription_ids)
