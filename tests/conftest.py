import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from multikick.kick_api_client import KickApiClient
from multikick.tenant import Tenant


def build_response(status=200, json_body=None, text_body="", headers=None):
    """An `async with session.xxx(...)` context manager yielding a canned response."""
    response = MagicMock()
    response.status = status
    response.reason = "OK" if status < 400 else "Bad Request"
    response.headers = {"Content-Type": "application/json" if json_body is not None else "text/plain"}
    response.headers.update(headers or {})
    response.json = AsyncMock(return_value=json_body)
    response.text = AsyncMock(return_value=text_body)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


@pytest.fixture
def make_response():
    return build_response


@pytest.fixture
def mock_session():
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    return session


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_key_pem(rsa_private_key):
    return rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture
def sign(rsa_private_key):
    def _sign(message_id: str, timestamp: str, body: bytes) -> str:
        signature = rsa_private_key.sign(
            b".".join([message_id.encode(), timestamp.encode(), body]),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode()
    return _sign


@pytest.fixture
def make_client():
    def _make_client(access_token=None):
        client = MagicMock(spec=KickApiClient)
        client.access_token = access_token
        return client
    return _make_client


@pytest.fixture
def make_tenant(make_client):
    def _make_tenant(broadcaster_user_id=42, slug="foo", refresh_token="RT1",
                     subscription_id=None, with_client=True):
        tenant = Tenant(broadcaster_user_id=broadcaster_user_id, slug=slug,
                        refresh_token=refresh_token, subscription_id=subscription_id)
        if with_client:
            tenant.access_token = "AT1"
            tenant.client = make_client("AT1")
        return tenant
    return _make_tenant
