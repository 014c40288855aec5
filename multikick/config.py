import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import KICK_API_BASE_URL, KICK_OAUTH_BASE_URL, KickValidationError

DEFAULT_SCOPES = "chat:write channel:write events:subscribe"
DEFAULT_KEEPALIVE_USER_MESSAGE = "Remember to stretch and grab some water! 💧"
DEFAULT_KEEPALIVE_BOT_MESSAGE = "Your friendly bot is online across all channels 🤖"


class MultiStreamConfig(BaseModel):
    """
    Runtime settings for the multi-stream bot.

    Usually built with `from_env()` after `load_dotenv()` has populated the
    process environment.
    """
    client_id: str
    client_secret: str
    redirect_uri: str = "http://localhost:3000/oauth/callback"
    scopes: List[str] = Field(default_factory=lambda: DEFAULT_SCOPES.split())

    host: str = "0.0.0.0"
    port: int = 3000
    webhook_path: str = "/kick/webhook"
    add_streamer_path: str = "/kick/streamers/add"
    remove_streamer_path: str = "/kick/streamers/remove"

    store_path: str = "multi-streamers.json"
    # Shared secret expected in Kick-App-Secret on webhooks and onboarding calls
    app_secret: Optional[str] = None

    keep_alive_interval_seconds: float = 300
    keep_alive_user_message: str = DEFAULT_KEEPALIVE_USER_MESSAGE
    keep_alive_bot_message: str = DEFAULT_KEEPALIVE_BOT_MESSAGE

    refresh_safety_margin_seconds: float = 120
    minimum_refresh_delay_seconds: float = 30
    reconcile_interval_seconds: float = 1800
    request_timeout_seconds: float = 10

    api_base_url: str = KICK_API_BASE_URL
    oauth_base_url: str = KICK_OAUTH_BASE_URL
    log_level: str = "INFO"

    @field_validator("scopes", mode="before")
    @classmethod
    def split_scopes(cls, v):
        if isinstance(v, str):
            return v.split()
        return v

    @field_validator("app_secret", mode="before")
    @classmethod
    def blank_secret_is_unset(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("keep_alive_interval_seconds", "request_timeout_seconds")
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MultiStreamConfig":
        """
        Build the configuration from KICK_* environment variables.

        Raises:
            KickValidationError: If the client credentials are missing.
        """
        env = os.environ if environ is None else environ

        client_id = env.get("KICK_CLIENT_ID")
        client_secret = env.get("KICK_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise KickValidationError("Set KICK_CLIENT_ID and KICK_CLIENT_SECRET before running the bot.")

        mapping = {
            "redirect_uri": "KICK_REDIRECT_URI",
            "scopes": "KICK_SCOPES",
            "host": "KICK_HOST",
            "port": "KICK_PORT",
            "webhook_path": "KICK_WEBHOOK_PATH",
            "add_streamer_path": "KICK_ADD_ENDPOINT",
            "remove_streamer_path": "KICK_REMOVE_ENDPOINT",
            "store_path": "KICK_STORE_PATH",
            "app_secret": "KICK_APP_SECRET",
            "keep_alive_interval_seconds": "KICK_KEEPALIVE_SECONDS",
            "keep_alive_user_message": "KICK_KEEPALIVE_USER",
            "keep_alive_bot_message": "KICK_KEEPALIVE_BOT",
            "refresh_safety_margin_seconds": "KICK_REFRESH_MARGIN_SECONDS",
            "minimum_refresh_delay_seconds": "KICK_MIN_REFRESH_SECONDS",
            "reconcile_interval_seconds": "KICK_RECONCILE_SECONDS",
            "request_timeout_seconds": "KICK_REQUEST_TIMEOUT",
            "api_base_url": "KICK_API_BASE_URL",
            "oauth_base_url": "KICK_OAUTH_BASE_URL",
            "log_level": "KICK_LOG_LEVEL",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var) is not None}

        try:
            return cls(client_id=client_id, client_secret=client_secret, **values)
        except ValueError as e:
            raise KickValidationError(f"Invalid configuration: {e}") from e
