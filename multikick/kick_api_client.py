import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp

from .constants import KICK_API_BASE_URL, USER_AGENT, KickApiError

logger = logging.getLogger(__name__)


async def parse_kick_response(response: aiohttp.ClientResponse) -> Any:
    """Return the response body as JSON when it is JSON, otherwise as text."""
    content_type = response.headers.get("Content-Type", "") or ""
    if "application/json" in content_type:
        try:
            return await response.json()
        except (aiohttp.ContentTypeError, json.JSONDecodeError):
            pass  # fall back to text
    return await response.text()


def request_id_from(response: aiohttp.ClientResponse) -> Optional[str]:
    return response.headers.get("Kick-Request-Id") or response.headers.get("X-Request-Id")


class KickApiClient:
    """
    Async wrapper around the Kick public REST API.

    A client carries one bearer token. Tenants each get their own client, all
    sharing one aiohttp.ClientSession owned by the bot.
    """

    def __init__(self,
                 access_token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = KICK_API_BASE_URL,
                 timeout: float = 10,
                 user_agent: str = USER_AGENT):
        self.access_token = access_token
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.user_agent = user_agent
        self._owns_session = False

    def set_access_token(self, token: Optional[str]) -> None:
        """Update the bearer token used for subsequent requests."""
        self.access_token = token or None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None
        self._owns_session = False

    @staticmethod
    def _build_query(query: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        if not query:
            return params
        for key, value in query.items():
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                params.extend((key, str(item)) for item in value if item is not None)
            else:
                params.append((key, str(value)))
        return params

    async def request(self, method: str, path: str, query: Optional[Dict[str, Any]] = None,
                      body: Any = None, unwrap_data: bool = True) -> Any:
        """
        Execute an API request.

        Args:
            method: HTTP verb
            path: Path relative to the API base URL
            query: Query parameters; list values become repeated keys
            body: JSON body, if any
            unwrap_data: Return the `data` member of the response when present

        Returns:
            The parsed response (None for 204 responses)

        Raises:
            KickApiError: On a non-2xx status or a transport failure
        """
        target_path = path if path.startswith("/") else f"/{path}"
        url = f"{self.base_url}{target_path}"
        headers = {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        session = await self._get_session()
        try:
            async with session.request(method, url,
                                       params=self._build_query(query),
                                       json=body,
                                       headers=headers,
                                       timeout=self.timeout) as response:
                if response.status == 204:
                    return None
                parsed = await parse_kick_response(response)
                if response.status >= 400:
                    raise KickApiError("Kick API request failed",
                                       status=response.status,
                                       status_text=response.reason,
                                       body=parsed,
                                       request_id=request_id_from(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"HTTP error during {method} {target_path}: {e}")
            raise KickApiError(f"HTTP error during {method} {target_path}: {e}") from e

        if unwrap_data and isinstance(parsed, dict) and "data" in parsed:
            return parsed["data"]
        return parsed

    # --- Chat ---
    async def send_chat_message(self, content: str, type: str = "bot",
                                broadcaster_user_id: Optional[int] = None,
                                reply_to_message_id: Optional[str] = None) -> Any:
        if not isinstance(content, str) or content.strip() == "":
            raise ValueError("content must be a non-empty string")
        if type not in ("bot", "user"):
            raise ValueError('type must be either "bot" or "user"')
        if type == "user" and not isinstance(broadcaster_user_id, int):
            raise ValueError("broadcaster_user_id is required when sending as a user")

        body: Dict[str, Any] = {"content": content, "type": type}
        if broadcaster_user_id is not None:
            body["broadcaster_user_id"] = broadcaster_user_id
        if reply_to_message_id:
            body["reply_to_message_id"] = reply_to_message_id
        return await self.request("POST", "/chat", body=body)

    # --- Channels ---
    async def get_channels(self, broadcaster_user_ids: Optional[Iterable[int]] = None,
                           slugs: Optional[Iterable[str]] = None) -> Any:
        broadcaster_user_ids = list(broadcaster_user_ids or [])
        slugs = list(slugs or [])
        if broadcaster_user_ids and slugs:
            raise ValueError("broadcaster_user_ids and slugs cannot be provided together")
        query = {"broadcaster_user_id": broadcaster_user_ids or None, "slug": slugs or None}
        return await self.request("GET", "/channels", query=query)

    async def update_channel_metadata(self, category_id: Optional[int] = None,
                                      stream_title: Optional[str] = None,
                                      custom_tags: Optional[List[str]] = None) -> None:
        body: Dict[str, Any] = {}
        if category_id is not None:
            body["category_id"] = category_id
        if stream_title is not None:
            body["stream_title"] = stream_title
        if custom_tags is not None:
            body["custom_tags"] = list(custom_tags)
        if not body:
            raise ValueError("At least one of category_id, stream_title or custom_tags must be provided")
        await self.request("PATCH", "/channels", body=body, unwrap_data=False)

    # --- Events ---
    async def list_event_subscriptions(self, broadcaster_user_id: Optional[int] = None) -> Any:
        return await self.request("GET", "/events/subscriptions",
                                  query={"broadcaster_user_id": broadcaster_user_id})

    async def create_event_subscriptions(self, events: List[Dict[str, Any]],
                                         broadcaster_user_id: Optional[int] = None,
                                         method: str = "webhook") -> Any:
        if not events:
            raise ValueError("events must be a non-empty list")
        normalized = []
        for event in events:
            name = event.get("name") if isinstance(event, dict) else None
            version = event.get("version") if isinstance(event, dict) else None
            if not isinstance(name, str) or not name.strip():
                raise ValueError("Event name must be a non-empty string")
            if not isinstance(version, int):
                raise ValueError("Event version must be a number")
            normalized.append({"name": name, "version": version})

        body: Dict[str, Any] = {"method": method, "events": normalized}
        if broadcaster_user_id is not None:
            body["broadcaster_user_id"] = broadcaster_user_id
        return await self.request("POST", "/events/subscriptions", body=body)

    async def delete_event_subscriptions(self, ids: List[str]) -> None:
        if not ids:
            raise ValueError("ids must be a non-empty list of subscription ids")
        await self.request("DELETE", "/events/subscriptions", query={"id": list(ids)}, unwrap_data=False)

    # --- Public key ---
    async def get_public_key(self) -> Any:
        return await self.request("GET", "/public-key")

    # --- Users ---
    async def get_users(self, ids: Optional[Iterable[int]] = None) -> Any:
        return await self.request("GET", "/users", query={"id": list(ids or []) or None})

    async def introspect_token(self) -> Any:
        return await self.request("POST", "/token/introspect")

    # --- Livestreams ---
    async def get_livestreams(self, broadcaster_user_ids: Optional[Iterable[int]] = None,
                              category_id: Optional[int] = None, language: Optional[str] = None,
                              limit: Optional[int] = None, sort: Optional[str] = None) -> Any:
        query = {
            "broadcaster_user_id": list(broadcaster_user_ids or []) or None,
            "category_id": category_id,
            "language": language,
            "limit": limit,
            "sort": sort,
        }
        return await self.request("GET", "/livestreams", query=query)

    async def get_livestream_stats(self) -> Any:
        return await self.request("GET", "/livestreams/stats")

    # --- Moderation ---
    async def ban_user(self, broadcaster_user_id: int, user_id: int,
                       duration: Optional[int] = None, reason: Optional[str] = None) -> Any:
        if not isinstance(broadcaster_user_id, int) or not isinstance(user_id, int):
            raise ValueError("broadcaster_user_id and user_id are required and must be integers")
        body: Dict[str, Any] = {"broadcaster_user_id": broadcaster_user_id, "user_id": user_id}
        if duration is not None:
            body["duration"] = duration
        if reason is not None:
            body["reason"] = reason
        return await self.request("POST", "/moderation/bans", body=body)

    async def unban_user(self, broadcaster_user_id: int, user_id: int) -> Any:
        if not isinstance(broadcaster_user_id, int) or not isinstance(user_id, int):
            raise ValueError("broadcaster_user_id and user_id are required and must be integers")
        body = {"broadcaster_user_id": broadcaster_user_id, "user_id": user_id}
        return await self.request("DELETE", "/moderation/bans", body=body)

    # --- Categories ---
    async def search_categories(self, query: str, page: Optional[int] = None) -> Any:
        if not isinstance(query, str) or not query.strip():
            raise ValueError("query must be a non-empty string")
        return await self.request("GET", "/categories", query={"q": query, "page": page})

    async def get_category(self, category_id: int) -> Any:
        if category_id is None:
            raise ValueError("category_id is required")
        return await self.request("GET", f"/categories/{category_id}")

    # --- Kicks ---
    async def get_kicks_leaderboard(self, top: Optional[int] = None) -> Any:
        return await self.request("GET", "/kicks/leaderboard", query={"top": top})
