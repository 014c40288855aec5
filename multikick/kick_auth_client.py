import asyncio
import base64
import hashlib
import logging
import secrets  # For a cryptographically strong random number generator
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote_plus, urlencode

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError

from .constants import KICK_OAUTH_BASE_URL, KickApiError, KickAuthError
from .kick_api_client import parse_kick_response, request_id_from

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "chat:write"
# Token endpoint statuses that mean the credential itself was rejected
CREDENTIAL_REJECTED_STATUSES = (400, 401, 403)


# PKCE Helper Functions
def generate_code_verifier(length: int = 64) -> str:
    """
    Generates a cryptographically secure random string to be used as the PKCE code verifier.
    The length should be between 43 and 128 characters.
    """
    if not (43 <= length <= 128):
        raise ValueError("Code verifier length must be between 43 and 128 characters.")
    return secrets.token_urlsafe(length)[:length]


def generate_code_challenge(verifier: str) -> str:
    """
    Generates the PKCE code challenge from a given code verifier.
    The challenge is the BASE64 URL-encoded SHA256 hash of the verifier.
    """
    sha256_hash = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(sha256_hash).decode('utf-8').rstrip('=')


def create_pkce_pair() -> Tuple[str, str]:
    """Returns a (verifier, challenge) pair."""
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier)


def generate_state() -> str:
    return secrets.token_urlsafe(16)


def build_authorization_url(client_id: str, redirect_uri: str, scopes: List[str], state: str,
                            code_challenge: str, base_url: str = KICK_OAUTH_BASE_URL) -> str:
    """
    Build the URL a streamer opens to grant the app access.

    Raises:
        ValueError: If any of the required parts is missing
    """
    if not client_id:
        raise ValueError("client_id is required to create authorization URL")
    if not redirect_uri:
        raise ValueError("redirect_uri is required to create authorization URL")
    if not scopes:
        raise ValueError("At least one scope is required to create authorization URL")
    if not state:
        raise ValueError("state is required to create authorization URL")
    if not code_challenge:
        raise ValueError("code_challenge is required to create authorization URL")

    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{base_url.rstrip('/')}/oauth/authorize?{urlencode(params, quote_via=quote_plus)}"


class TokenResponse(BaseModel):
    """Successful answer from the OAuth token endpoint."""
    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


class KickAuthClient:
    """
    Stateless OAuth 2.1 client for the Kick identity server.

    Holds no tokens itself: callers pass the credential for the tenant they
    are acting for and keep the result.
    """

    def __init__(self, client_id: str, client_secret: Optional[str] = None,
                 base_url: str = KICK_OAUTH_BASE_URL,
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 10):
        if not client_id:
            raise ValueError("client_id is required for KickAuthClient")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.token_endpoint = f"{self.base_url}/oauth/token"
        self.revoke_endpoint = f"{self.base_url}/oauth/revoke"
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._owns_session = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None
        self._owns_session = False

    def get_authorization_url(self, redirect_uri: str, scopes: List[str]) -> Tuple[str, str, str]:
        """
        Generates the full authorization URL together with its code_verifier and state.
        The code_verifier must be kept by the caller for the token exchange.
        """
        code_verifier, code_challenge = create_pkce_pair()
        state = generate_state()
        auth_url = build_authorization_url(self.client_id, redirect_uri, scopes, state,
                                           code_challenge, base_url=self.base_url)
        logger.debug(f"Generated authorization URL (first 80 chars): {auth_url[:80]}...")
        return auth_url, code_verifier, state

    async def get_app_access_token(self, scopes: Optional[List[str]] = None) -> TokenResponse:
        """Request an app access token via the client credentials flow."""
        payload = {"grant_type": "client_credentials", "client_id": self.client_id}
        scopes = [DEFAULT_SCOPE] if scopes is None else scopes
        if scopes:
            payload["scope"] = " ".join(scopes)
        return await self._post_token(payload, "client credentials grant")

    async def exchange_code_for_tokens(self, code: str, redirect_uri: str, code_verifier: str) -> TokenResponse:
        """
        Exchanges the authorization code for an access token and refresh token.
        The code and verifier are single-use: a failed exchange consumes them.
        """
        if not code:
            raise ValueError("code is required to exchange for token")
        if not redirect_uri:
            raise ValueError("redirect_uri is required to exchange for token")
        if not code_verifier:
            raise ValueError("code_verifier is required to exchange for token")

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "code_verifier": code_verifier,
        }
        return await self._post_token(payload, "token exchange")

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Uses a refresh token to obtain a new access token.

        Raises:
            KickAuthError: If the token endpoint rejects the refresh token
            KickApiError: If the token endpoint could not be reached
        """
        if not refresh_token:
            raise KickAuthError("No refresh token available to refresh the access token.")
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        return await self._post_token(payload, "token refresh")

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """Revoke an access or refresh token."""
        if not token:
            raise ValueError("token is required to revoke")
        params = {"token": token}
        if token_type_hint:
            params["token_hint_type"] = token_type_hint

        session = await self._get_session()
        try:
            async with session.post(self.revoke_endpoint, params=params,
                                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                                    timeout=self.timeout) as response:
                if response.status >= 400:
                    body = await parse_kick_response(response)
                    raise KickApiError("Failed to revoke token",
                                        status=response.status,
                                        status_text=response.reason,
                                        body=body,
                                        request_id=request_id_from(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise KickApiError(f"AIOHTTP client error during token revoke: {e}") from e

    async def _post_token(self, payload: Dict[str, Any], action: str) -> TokenResponse:
        if self.client_secret:
            payload["client_secret"] = self.client_secret

        session = await self._get_session()
        try:
            async with session.post(self.token_endpoint, data=payload, timeout=self.timeout) as response:
                body = await parse_kick_response(response)
                if response.status >= 400:
                    error_text = body
                    if isinstance(body, dict):
                        error_text = body.get("error_description", body.get("error", body))
                    logger.error(f"Error during {action}: {response.status} - {error_text}")
                    # Only these reject the credential itself; 408, 429 and 5xx are retryable
                    error_cls = KickAuthError if response.status in CREDENTIAL_REJECTED_STATUSES else KickApiError
                    raise error_cls(f"Kick OAuth {action} failed",
                                        status=response.status,
                                        status_text=response.reason,
                                        body=body,
                                        request_id=request_id_from(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"AIOHTTP client error during {action}: {e}")
            raise KickApiError(f"AIOHTTP client error during {action}: {e}") from e

        if not isinstance(body, dict):
            raise KickApiError(f"Token endpoint returned a non-JSON response during {action}", body=body)
        try:
            return TokenResponse.model_validate(body)
        except ValidationError as e:
            raise KickApiError(f"Invalid token response during {action}: {e}", body=body) from e
