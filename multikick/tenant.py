import asyncio
import datetime
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .kick_api_client import KickApiClient
from .kick_auth_client import TokenResponse

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TenantRecord(BaseModel):
    """
    The persisted part of a tenant. The access token is never stored:
    it is short-lived and re-minted from the refresh token on startup.
    """
    model_config = ConfigDict(populate_by_name=True)

    broadcaster_user_id: int = Field(alias="broadcasterUserId")
    slug: Optional[str] = None
    refresh_token: Optional[str] = Field(None, alias="refreshToken")
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")


class Tenant:
    """One onboarded broadcaster sharing the bot deployment."""

    def __init__(self, broadcaster_user_id: int, slug: Optional[str] = None,
                 refresh_token: Optional[str] = None, subscription_id: Optional[str] = None):
        self.broadcaster_user_id = broadcaster_user_id
        self.slug = slug
        self.refresh_token = refresh_token
        self.subscription_id = subscription_id

        # In memory only
        self.access_token: Optional[str] = None
        self.expires_in: Optional[int] = None
        self.updated_at: Optional[str] = None
        self.needs_reauth: bool = False
        self.client: Optional[KickApiClient] = None
        self.refresh_task: Optional[asyncio.Task] = None
        self.keep_alive_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return (f"Tenant(broadcaster_user_id={self.broadcaster_user_id!r}, slug={self.slug!r}, "
                f"subscription_id={self.subscription_id!r})")

    @property
    def display_name(self) -> str:
        return self.slug or str(self.broadcaster_user_id)

    @classmethod
    def from_record(cls, record: TenantRecord) -> "Tenant":
        return cls(broadcaster_user_id=record.broadcaster_user_id,
                   slug=record.slug,
                   refresh_token=record.refresh_token,
                   subscription_id=record.subscription_id)

    def to_record(self) -> TenantRecord:
        return TenantRecord(broadcaster_user_id=self.broadcaster_user_id,
                            slug=self.slug,
                            refresh_token=self.refresh_token,
                            subscription_id=self.subscription_id)

    def apply_tokens(self, tokens: TokenResponse) -> None:
        """
        Take over a fresh token issuance. A new refresh token supersedes the old
        one; when the server does not rotate it the current one stays in use.
        """
        self.access_token = tokens.access_token
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token
        self.expires_in = tokens.expires_in if tokens.expires_in is not None else DEFAULT_EXPIRES_IN
        self.updated_at = datetime.datetime.now(datetime.timezone.utc).isoformat()
        self.needs_reauth = False
        if self.client is not None:
            self.client.set_access_token(self.access_token)

    @staticmethod
    def _task_alive(task: Optional[asyncio.Task]) -> bool:
        return task is not None and not task.done()

    @property
    def has_refresh_task(self) -> bool:
        return self._task_alive(self.refresh_task)

    @property
    def has_keep_alive_task(self) -> bool:
        return self._task_alive(self.keep_alive_task)

    def cancel_tasks(self) -> None:
        """Cancel the refresh and keep-alive tasks owned by this tenant."""
        for task in (self.refresh_task, self.keep_alive_task):
            if task is not None and not task.done():
                task.cancel()
        self.refresh_task = None
        self.keep_alive_task = None
