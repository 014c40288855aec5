import base64
import binascii
import hmac
import logging
from typing import Mapping, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from .constants import (
    HEADER_APP_SECRET,
    HEADER_MESSAGE_ID,
    HEADER_MESSAGE_TIMESTAMP,
    HEADER_SIGNATURE,
    KickApiError,
    WebhookAuthenticationError,
)
from .kick_api_client import KickApiClient

logger = logging.getLogger(__name__)


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts and aiohttp headers."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class KickSignatureVerifier:
    """
    Verifies that webhook deliveries really come from Kick.

    Kick signs `message_id.timestamp.body` with its private key (RSA,
    PKCS#1 v1.5, SHA-256) and sends the base64 signature in a header. The
    public key is fetched once and kept for the life of the process;
    `refresh_public_key()` replaces it when Kick rotates.
    """

    def __init__(self, api_client: Optional[KickApiClient] = None, app_secret: Optional[str] = None):
        self.api_client = api_client
        self.app_secret = app_secret or None
        self.public_key: Optional[RSAPublicKey] = None

    def set_public_key_pem(self, public_key_pem: str) -> RSAPublicKey:
        """Load and install a PEM-encoded public key."""
        try:
            public_key = load_pem_public_key(public_key_pem.encode())
        except (ValueError, UnsupportedAlgorithm) as e:
            raise KickApiError(f"Failed to load public key: {e}") from e
        if not isinstance(public_key, RSAPublicKey):
            raise KickApiError("Kick public key is not an RSA key")
        self.public_key = public_key
        return public_key

    async def fetch_public_key(self, force: bool = False) -> RSAPublicKey:
        """
        Fetch the public key from the Kick API, unless one is already cached.

        Raises:
            KickApiError: If the key cannot be fetched or loaded
        """
        if self.public_key is not None and not force:
            return self.public_key
        if self.api_client is None:
            raise KickApiError("No API client configured to fetch the Kick public key")

        logger.info("Fetching Kick public key")
        data = await self.api_client.get_public_key()
        public_key_pem = data.get("public_key") if isinstance(data, dict) else None
        if not public_key_pem:
            logger.error(f"Invalid public key response format: {data}")
            raise KickApiError("Unable to fetch Kick public key for webhook verification.")

        public_key = self.set_public_key_pem(public_key_pem)
        logger.info("Loaded Kick public key.")
        return public_key

    async def refresh_public_key(self) -> RSAPublicKey:
        """Drop the cached key and fetch it again."""
        return await self.fetch_public_key(force=True)

    @staticmethod
    def build_signed_payload(message_id: str, timestamp: str, raw_body: bytes) -> bytes:
        """The exact bytes Kick signs. The body must be the untouched request body."""
        return b".".join([message_id.encode(), timestamp.encode(), raw_body])

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Check a webhook delivery. Never raises; any doubt means False.

        Args:
            headers: Request headers
            raw_body: The request body exactly as received

        Returns:
            True if the delivery is authentic
        """
        if self.public_key is None:
            logger.error("Kick public key not loaded; rejecting webhook.")
            return False

        message_id = get_header(headers, HEADER_MESSAGE_ID)
        timestamp = get_header(headers, HEADER_MESSAGE_TIMESTAMP)
        signature = get_header(headers, HEADER_SIGNATURE)
        if not message_id or not timestamp or not signature:
            logger.warning("Webhook is missing message id, timestamp or signature headers.")
            return False

        if self.app_secret:
            provided_secret = get_header(headers, HEADER_APP_SECRET)
            if not provided_secret or not hmac.compare_digest(provided_secret.encode(), self.app_secret.encode()):
                logger.warning("Webhook secret mismatch.")
                return False

        try:
            signature_bytes = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Failed to decode webhook signature: {e}")
            return False

        try:
            self.public_key.verify(
                signature_bytes,
                self.build_signed_payload(message_id, timestamp, raw_body),
                padding.PKCS1v15(),
                hashes.SHA256()
            )
        except InvalidSignature:
            logger.warning("Invalid webhook signature detected")
            return False
        except Exception as e:
            logger.error(f"Webhook signature verification failed: {e}")
            return False
        return True

    def authenticate(self, headers: Mapping[str, str], raw_body: bytes) -> None:
        """
        Like `verify()`, but raises instead of returning False.

        Raises:
            WebhookAuthenticationError: If the delivery is not authentic
        """
        if not self.verify(headers, raw_body):
            raise WebhookAuthenticationError("invalid signature")
