import logging
import sys

from .config import MultiStreamConfig
from .constants import (
    DispatchError,
    KickApiError,
    KickAuthError,
    KickValidationError,
    MultiKickException,
    OnboardingError,
    PersistenceError,
    WebhookAuthenticationError,
)
from .kick_api_client import KickApiClient
from .kick_auth_client import KickAuthClient
from .kick_signature_verifier import KickSignatureVerifier
from .multi_stream_bot import MultiStreamBot
from .webhook_server import MultiStreamWebhookServer

time_format = "%Y-%m-%d %I:%M.%S %p"

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
stream_handler = logging.StreamHandler(sys.stdout)

formatter = logging.Formatter(fmt='%(asctime)s - %(levelname)s - %(message)s', datefmt=time_format)
stream_handler.setFormatter(formatter)

logger.addHandler(stream_handler)


def set_log_level(log_level: str) -> None:
    """
    Set log level to your desired choice. By default, it is set to INFO.
    Debug shows a lot more, including every webhook delivery.
    """
    log_level = log_level.upper()
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if log_level in valid_levels:
        logger.setLevel(log_level)
    else:
        logger.warning(f"Invalid log level: {log_level}")
