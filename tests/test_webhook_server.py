import base64
import json
import os
import tempfile
from unittest.mock import AsyncMock, MagicMock

from aiohttp.test_utils import AioHTTPTestCase
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from multikick.command_processor import CommandProcessor
from multikick.config import MultiStreamConfig
from multikick.constants import OnboardingError
from multikick.event_router import EventRouter
from multikick.kick_signature_verifier import KickSignatureVerifier
from multikick.onboarding import OnboardingRequest
from multikick.tenant import Tenant
from multikick.tenant_registry import TenantRegistry
from multikick.webhook_server import MultiStreamWebhookServer

PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PUBLIC_KEY_PEM = PRIVATE_KEY.public_key().public_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PublicFormat.SubjectPublicKeyInfo,
).decode()

CHAT_BODY = json.dumps({
    "message_id": "msg-1",
    "broadcaster": {"user_id": 42, "username": "foo"},
    "sender": {"user_id": 7, "username": "viewer"},
    "content": "!ping",
}).encode()


def signed_headers(body, message_id="evt-1", timestamp="2024-03-10T10:00:00Z", **extra):
    signature = PRIVATE_KEY.sign(b".".join([message_id.encode(), timestamp.encode(), body]),
                                 padding.PKCS1v15(), hashes.SHA256())
    headers = {
        "Kick-Event-Message-Id": message_id,
        "Kick-Event-Message-Timestamp": timestamp,
        "Kick-Event-Signature": base64.b64encode(signature).decode(),
        "Kick-Event-Type": "chat.message.sent",
        "Kick-Event-Subscription-Id": "sub-1",
        "Content-Type": "application/json",
    }
    headers.update(extra)
    return headers


class WebhookServerTestCase(AioHTTPTestCase):
    app_secret = "s3cret"

    async def get_application(self):
        self.config = MultiStreamConfig(client_id="cid", client_secret="csecret", app_secret=self.app_secret)
        self.bot = MagicMock()
        self.bot.signature_verifier = KickSignatureVerifier()
        self.bot.signature_verifier.set_public_key_pem(PUBLIC_KEY_PEM)
        self.bot.router.dispatch = AsyncMock(return_value=True)
        self.bot.onboard = AsyncMock(return_value=Tenant(42, slug="foo", refresh_token="RT1"))
        self.bot.remove_tenant = AsyncMock(return_value=Tenant(42, slug="foo"))
        self.bot.registry.all = MagicMock(return_value=[])
        self.bot.is_active = True
        self.server = MultiStreamWebhookServer(self.bot, self.config)
        return self.server.create_app()


class TestWebhookEndpoint(WebhookServerTestCase):

    async def test_valid_delivery_is_dispatched(self):
        resp = await self.client.post("/kick/webhook", data=CHAT_BODY, headers=signed_headers(CHAT_BODY))
        self.assertEqual(resp.status, 200)
        self.bot.router.dispatch.assert_awaited_once()
        event_type, subscription_id, payload = self.bot.router.dispatch.await_args.args
        self.assertEqual(event_type, "chat.message.sent")
        self.assertEqual(subscription_id, "sub-1")
        self.assertEqual(payload["content"], "!ping")

    async def test_invalid_signature_rejected(self):
        headers = signed_headers(CHAT_BODY)
        tampered = CHAT_BODY.replace(b"!ping", b"!pong")
        resp = await self.client.post("/kick/webhook", data=tampered, headers=headers)
        self.assertEqual(resp.status, 401)
        self.assertEqual(await resp.text(), "invalid signature")
        self.bot.router.dispatch.assert_not_awaited()

    async def test_missing_signature_rejected(self):
        resp = await self.client.post("/kick/webhook", data=CHAT_BODY,
                                      headers={"Content-Type": "application/json"})
        self.assertEqual(resp.status, 401)

    async def test_dispatch_error_still_acknowledged(self):
        self.bot.router.dispatch.side_effect = RuntimeError("handler blew up")
        resp = await self.client.post("/kick/webhook", data=CHAT_BODY, headers=signed_headers(CHAT_BODY))
        self.assertEqual(resp.status, 200)

    async def test_invalid_json_acknowledged(self):
        body = b"{not json"
        resp = await self.client.post("/kick/webhook", data=body, headers=signed_headers(body))
        self.assertEqual(resp.status, 200)
        self.bot.router.dispatch.assert_not_awaited()


class TestWebhookRouting(WebhookServerTestCase):
    """Deliveries routed through a real EventRouter"""

    async def get_application(self):
        app = await super().get_application()
        store_path = os.path.join(tempfile.mkdtemp(), "multi-streamers.json")
        self.processor = MagicMock(spec=CommandProcessor)
        self.processor.handle = AsyncMock()
        self.bot.router = EventRouter(TenantRegistry(store_path), self.processor)
        return app

    async def test_unknown_subscription_acknowledged_without_handling(self):
        resp = await self.client.post("/kick/webhook", data=CHAT_BODY,
                                      headers=signed_headers(CHAT_BODY, **{"Kick-Event-Subscription-Id": "sub-x"}))
        self.assertEqual(resp.status, 200)
        self.processor.handle.assert_not_awaited()

    async def test_known_subscription_reaches_its_tenant(self):
        tenant = Tenant(42, slug="foo", refresh_token="RT1", subscription_id="sub-1")
        self.bot.router.registry.restore(tenant)

        resp = await self.client.post("/kick/webhook", data=CHAT_BODY, headers=signed_headers(CHAT_BODY))
        self.assertEqual(resp.status, 200)
        self.processor.handle.assert_awaited_once()
        self.assertIs(self.processor.handle.await_args.args[0], tenant)


class TestOnboardingEndpoint(WebhookServerTestCase):

    async def test_onboarding_success(self):
        resp = await self.client.post("/kick/streamers/add", json={"code": "abc", "code_verifier": "xyz"},
                                      headers={"Kick-App-Secret": "s3cret"})
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.json(), {"ok": True, "broadcasterUserId": 42, "slug": "foo"})
        request = self.bot.onboard.await_args.args[0]
        self.assertIsInstance(request, OnboardingRequest)
        self.assertEqual((request.code, request.code_verifier), ("abc", "xyz"))

    async def test_wrong_secret(self):
        resp = await self.client.post("/kick/streamers/add", json={"code": "abc", "code_verifier": "xyz"},
                                      headers={"Kick-App-Secret": "nope"})
        self.assertEqual(resp.status, 401)
        self.assertEqual(await resp.text(), "invalid secret")
        self.bot.onboard.assert_not_awaited()

    async def test_missing_fields(self):
        resp = await self.client.post("/kick/streamers/add", json={"code": "abc"},
                                      headers={"Kick-App-Secret": "s3cret"})
        self.assertEqual(resp.status, 400)
        self.assertEqual(await resp.text(), "code and code_verifier required")

    async def test_invalid_json(self):
        resp = await self.client.post("/kick/streamers/add", data=b"{oops",
                                      headers={"Kick-App-Secret": "s3cret", "Content-Type": "application/json"})
        self.assertEqual(resp.status, 400)

    async def test_gate_failure_status_passed_through(self):
        self.bot.onboard.side_effect = OnboardingError("unable to determine broadcaster", status=502)
        resp = await self.client.post("/kick/streamers/add", json={"code": "abc", "code_verifier": "xyz"},
                                      headers={"Kick-App-Secret": "s3cret"})
        self.assertEqual(resp.status, 502)
        self.assertEqual(await resp.text(), "unable to determine broadcaster")

    async def test_unexpected_error(self):
        self.bot.onboard.side_effect = RuntimeError("boom")
        resp = await self.client.post("/kick/streamers/add", json={"code": "abc", "code_verifier": "xyz"},
                                      headers={"Kick-App-Secret": "s3cret"})
        self.assertEqual(resp.status, 500)


class TestOnboardingDisabled(WebhookServerTestCase):
    app_secret = None

    async def test_onboarding_forbidden_without_secret(self):
        resp = await self.client.post("/kick/streamers/add", json={"code": "abc", "code_verifier": "xyz"})
        self.assertEqual(resp.status, 403)
        self.bot.onboard.assert_not_awaited()


class TestRemoveAndHealth(WebhookServerTestCase):

    async def test_remove_streamer(self):
        resp = await self.client.post("/kick/streamers/remove", json={"broadcaster_user_id": 42, "revoke": True},
                                      headers={"Kick-App-Secret": "s3cret"})
        self.assertEqual(resp.status, 200)
        self.bot.remove_tenant.assert_awaited_once_with(42, revoke=True)

    async def test_remove_unknown_streamer(self):
        self.bot.remove_tenant.return_value = None
        resp = await self.client.post("/kick/streamers/remove", json={"broadcaster_user_id": 5},
                                      headers={"Kick-App-Secret": "s3cret"})
        self.assertEqual(resp.status, 404)

    async def test_health(self):
        parked = Tenant(7)
        parked.needs_reauth = True
        self.bot.registry.all.return_value = [Tenant(42), parked]
        resp = await self.client.get("/health")
        self.assertEqual(resp.status, 200)
        data = await resp.json()
        self.assertEqual(data["status"], "ok")
        self.assertEqual(data["streamers"], 2)
        self.assertEqual(data["needs_reauth"], [7])
