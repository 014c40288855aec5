from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import CHAT_MESSAGE_EVENT


class UserInfo(BaseModel):
    """User block found in chat.message.sent payloads (broadcaster and sender)."""
    model_config = ConfigDict(extra="allow")

    user_id: Optional[int] = None
    username: Optional[str] = None
    is_verified: Optional[bool] = None
    profile_picture: Optional[str] = None
    channel_slug: Optional[str] = None


class Badge(BaseModel):
    text: Optional[str] = None
    type: Optional[str] = None
    count: Optional[int] = None


class SenderIdentity(BaseModel):
    username_color: Optional[str] = None
    badges: List[Badge] = Field(default_factory=list)


class Sender(UserInfo):
    identity: Optional[SenderIdentity] = None


class ChatMessageEvent(BaseModel):
    """Body of a chat.message.sent webhook delivery."""
    model_config = ConfigDict(extra="allow")

    message_id: Optional[str] = None
    broadcaster: Optional[UserInfo] = None
    sender: Optional[Sender] = None
    content: str = ""
    created_at: Optional[str] = None

    @property
    def sender_username(self) -> str:
        if self.sender and self.sender.username:
            return self.sender.username
        return "unknown"


_event_model_map = {
    CHAT_MESSAGE_EVENT: ChatMessageEvent,
}


def parse_kick_event_payload(event_type: Optional[str], payload: dict) -> Optional[BaseModel]:
    """Parse a webhook body into the model registered for its event type, or None."""
    model = _event_model_map.get(event_type or "")
    if model is None or not isinstance(payload, dict):
        return None
    try:
        return model.model_validate(payload)
    except ValidationError:
        return None
