"""Tests for Polar webhooks, the Polar client and Discord notifications."""

import json
import time

import httpx
import pytest

from nullpass.service.billing import (
    PolarClient,
    PolarWebhookHandler,
    sign_payload,
    summarize_subscription,
    verify_signature,
)
from nullpass.service.errors import DependencyError, ForbiddenError
from nullpass.service.notify import DiscordNotifier, event_embed

SECRET = "whsec-unit"


def _signed_headers(body: bytes, *, secret: str = SECRET, sent_at=None) -> dict:
    timestamp = int(sent_at if sent_at is not None else time.time())
    return {
        "webhook-id": "msg_1",
        "webhook-timestamp": str(timestamp),
        "webhook-signature": sign_payload(secret, "msg_1", timestamp, body),
    }


@pytest.fixture
def handler(store, ledger, audit, http_client):
    notifier = DiscordNotifier("https://discord.test/webhook", http_client)
    return PolarWebhookHandler(store, ledger, audit, notifier)


class TestSignature:
    def test_valid_signature_passes(self):
        body = b'{"type":"subscription.created"}'
        verify_signature(SECRET, _signed_headers(body), body)

    def test_any_listed_signature_may_match(self):
        body = b"{}"
        headers = _signed_headers(body)
        headers["webhook-signature"] = "v1,bm90LWl0 " + headers["webhook-signature"]
        verify_signature(SECRET, headers, body)

    def test_tampered_body_fails(self):
        body = b'{"type":"subscription.created"}'
        with pytest.raises(ForbiddenError):
            verify_signature(SECRET, _signed_headers(body), body + b" ")

    def test_wrong_secret_fails(self):
        body = b"{}"
        with pytest.raises(ForbiddenError):
            verify_signature(SECRET, _signed_headers(body, secret="other"), body)

    def test_stale_timestamp_fails(self):
        body = b"{}"
        headers = _signed_headers(body, sent_at=time.time() - 600)
        with pytest.raises(ForbiddenError):
            verify_signature(SECRET, headers, body)

    def test_missing_secret_or_headers_fail(self):
        body = b"{}"
        with pytest.raises(ForbiddenError):
            verify_signature(None, _signed_headers(body), body)
        with pytest.raises(ForbiddenError):
            verify_signature(SECRET, {}, body)


class TestWebhookHandler:
    async def test_subscription_created_grants_premium_and_notifies(
        self, handler, ledger, store, user, outbound_requests
    ):
        await handler.handle(
            "DROP",
            {
                "type": "subscription.created",
                "data": {
                    "id": "sub_1",
                    "status": "active",
                    "customer_id": "cus_1",
                    "amount": 999,
                    "currency": "usd",
                    "metadata": {"userId": user.id, "plan": "pro"},
                },
            },
        )
        ent = ledger.get(user.id, "DROP")
        assert ent.is_premium and ent.tier == "pro"
        assert ent.polar_subscription_id == "sub_1"
        assert ent.polar_customer_id == "cus_1"

        posted = [json.loads(r.content) for r in outbound_requests if r.url.host == "discord.test"]
        titles = [p["embeds"][0]["title"] for p in posted]
        assert titles == ["Payment Successful", "New Subscription"]

        actions = [e.action for e in store.list_audit(user.id)[0]]
        assert "SUBSCRIPTION_CREATE" in actions

    async def test_cancellation_downgrades(self, handler, ledger, user):
        ledger.apply_subscription(
            user.id, "MAILS", status="active", plan="pro", subscription_id="sub_2", customer_id=None
        )
        await handler.handle(
            "MAILS",
            {"type": "subscription.canceled", "data": {"id": "sub_2", "metadata": {"userId": user.id}}},
        )
        ent = ledger.get(user.id, "MAILS")
        assert not ent.is_premium and ent.tier == "free"

    async def test_revocation_is_audited_as_cancel(self, handler, ledger, store, user):
        ledger.apply_subscription(
            user.id, "DROP", status="active", plan="pro", subscription_id="sub_9", customer_id=None
        )
        await handler.handle(
            "DROP",
            {"type": "subscription.revoked", "data": {"id": "sub_9", "metadata": {"userId": user.id}}},
        )
        assert not ledger.get(user.id, "DROP").is_premium
        entries = [e for e in store.list_audit(user.id)[0] if e.action == "SUBSCRIPTION_CANCEL"]
        assert len(entries) == 1
        assert entries[0].data["event"] == "subscription.revoked"

    async def test_malformed_amount_does_not_block_the_ledger(
        self, handler, ledger, user, outbound_requests
    ):
        await handler.handle(
            "DROP",
            {
                "type": "subscription.created",
                "data": {
                    "id": "sub_10",
                    "status": "active",
                    "amount": "999",
                    "customer": "not-a-dict",
                    "metadata": {"userId": user.id, "plan": "pro"},
                },
            },
        )
        ent = ledger.get(user.id, "DROP")
        assert ent.is_premium and ent.polar_subscription_id == "sub_10"
        posted = [json.loads(r.content) for r in outbound_requests if r.url.host == "discord.test"]
        amounts = [f["value"] for p in posted for f in p["embeds"][0]["fields"] if f["name"] == "Amount"]
        assert "0 USD" in amounts

    async def test_non_dict_metadata_is_ignored(self, handler, store, user):
        await handler.handle(
            "DROP", {"type": "subscription.created", "data": {"id": "sub_11", "metadata": ["x"]}}
        )
        assert store.get_entitlement(user.id, "DROP") is None

    async def test_customer_created_links_by_email(self, handler, ledger, user):
        await handler.handle(
            "VAULT",
            {"type": "customer.created", "data": {"id": "cus_7", "email": user.email}},
        )
        assert ledger.get(user.id, "VAULT").polar_customer_id == "cus_7"

    async def test_customer_deleted_clears_linkage(self, handler, ledger, user):
        ledger.link_customer(user.id, "DB", "cus_8")
        await handler.handle("DB", {"type": "customer.deleted", "data": {"id": "cus_8"}})
        assert ledger.get(user.id, "DB").polar_customer_id is None

    async def test_processing_failure_is_swallowed(self, handler, ledger):
        await handler.handle(
            "DROP",
            {
                "type": "subscription.updated",
                "data": {"id": "sub_3", "status": "active", "metadata": {"userId": "ghost"}},
            },
        )

    async def test_unknown_event_is_ignored(self, handler, store, user):
        await handler.handle("DROP", {"type": "benefit.granted", "data": {}})
        assert store.list_entitlements(user.id) == []


class TestPolarClient:
    async def test_get_subscription(self, http_client):
        polar = PolarClient("token", http_client, api_base="https://api.polar.test/v1")
        summary = summarize_subscription(await polar.get_subscription("sub_1"))
        assert summary["id"] == "sub_1"
        assert summary["plan"] == "pro"
        assert summary["price"] == {"amount": 9.99, "currency": "usd", "interval": "month"}
        assert summary["product"] == {"name": "Drop Pro"}

    async def test_upstream_error_is_a_dependency_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        polar = PolarClient("token", client)
        with pytest.raises(DependencyError):
            await polar.get_subscription("sub_1")

    async def test_cancel_is_best_effort(self):
        def refuse(request):
            raise httpx.ConnectError("unreachable", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        assert await PolarClient("token", client).cancel_subscription("sub_1") is False
        assert await PolarClient(None, client).cancel_subscription("sub_1") is False


class TestDiscordNotifier:
    async def test_unconfigured_notifier_sends_nothing(self, http_client, outbound_requests):
        notifier = DiscordNotifier(None, http_client)
        assert await notifier.notify_event("customer.created", {}) is False
        assert outbound_requests == []

    async def test_rejected_delivery_returns_false(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(400)))
        notifier = DiscordNotifier("https://discord.test/webhook", client)
        assert await notifier.notify_event("customer.created", {}) is False

    def test_event_embed_fields(self):
        embed = event_embed(
            "subscription.canceled",
            {"status": "canceled", "amount": 1500, "currency": "eur", "metadata": {"plan": "pro"}},
        )
        assert embed["title"] == "Subscription Canceled"
        assert embed["color"] == 0xFF0000
        values = {f["name"]: f["value"] for f in embed["fields"]}
        assert values["Amount"] == "15.00 EUR"
        assert values["Customer"] == "N/A"

    def test_unknown_event_embed(self):
        embed = event_embed("benefit.granted", {})
        assert embed["title"] == "Polar Webhook Event"
        assert embed["fields"][0]["value"] == "benefit.granted"
