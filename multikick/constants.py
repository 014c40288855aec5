from typing import Any, Optional

KICK_API_BASE_URL = "https://api.kick.com/public/v1"
KICK_OAUTH_BASE_URL = "https://id.kick.com"

SDK_VERSION = "0.1.0"
USER_AGENT = f"multikick/{SDK_VERSION} (+https://docs.kick.com/)"

CHAT_MESSAGE_EVENT = "chat.message.sent"
CHAT_MESSAGE_EVENT_VERSION = 1

# Webhook delivery headers
HEADER_MESSAGE_ID = "Kick-Event-Message-Id"
HEADER_MESSAGE_TIMESTAMP = "Kick-Event-Message-Timestamp"
HEADER_SIGNATURE = "Kick-Event-Signature"
HEADER_EVENT_TYPE = "Kick-Event-Type"
HEADER_EVENT_VERSION = "Kick-Event-Version"
HEADER_SUBSCRIPTION_ID = "Kick-Event-Subscription-Id"
HEADER_APP_SECRET = "Kick-App-Secret"


class MultiKickException(Exception):
    """Base exception for the multikick package."""
    pass


class KickApiError(MultiKickException):
    """
    Raised when the Kick API (or the OAuth server) answers with a non-2xx status,
    or when the request could not be completed at all.
    """

    def __init__(self, message: str, status: Optional[int] = None, status_text: Optional[str] = None,
                 body: Any = None, request_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.status_text = status_text
        self.body = body
        self.request_id = request_id

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status}, request_id={self.request_id}, body={self.body!r})"


class KickAuthError(KickApiError):
    """The token endpoint rejected a credential (expired, revoked or malformed)."""
    pass


class KickValidationError(MultiKickException):
    """Malformed caller input. Nothing is mutated when this is raised."""
    pass


class WebhookAuthenticationError(MultiKickException):
    """A webhook delivery failed signature or shared-secret checks."""
    pass


class DispatchError(MultiKickException):
    """A routed chat command could not be carried out."""
    pass


class PersistenceError(MultiKickException):
    """The tenant store could not be read or written."""
    pass


class OnboardingError(MultiKickException):
    """An onboarding gate failed. `status` is the HTTP status to answer with."""

    def __init__(self, message: str, status: int = 500) -> None:
        super().__init__(message)
        self.status = status
