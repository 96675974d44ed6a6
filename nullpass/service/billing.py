from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from nullpass.logging import get_logger
from nullpass.service.audit import AuditAction, AuditLog
from nullpass.service.entitlements import EntitlementLedger
from nullpass.service.errors import DependencyError, ForbiddenError
from nullpass.service.notify import DiscordNotifier, minor_units
from nullpass.storage.common import IdentityStore

logger = get_logger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 5 * 60


class PolarClient:
    """Thin wrapper over the Polar REST API."""

    def __init__(
        self,
        access_token: Optional[str],
        client: httpx.AsyncClient,
        *,
        api_base: str = "https://api.polar.sh/v1",
    ) -> None:
        self.access_token = access_token
        self.client = client
        self.api_base = api_base.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        if not self.is_configured:
            raise DependencyError("Failed to fetch subscription data")
        try:
            response = await self.client.get(
                f"{self.api_base}/subscriptions/{subscription_id}", headers=self._headers()
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "polar_subscription_fetch_failed",
                subscription_id=subscription_id,
                status_code=exc.response.status_code,
            )
            raise DependencyError("Failed to fetch subscription data") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "polar_subscription_fetch_failed",
                subscription_id=subscription_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyError("Failed to fetch subscription data") from exc

    async def cancel_subscription(self, subscription_id: str) -> bool:
        """Best-effort cancellation; returns whether Polar accepted it."""
        if not self.is_configured:
            return False
        try:
            response = await self.client.delete(
                f"{self.api_base}/subscriptions/{subscription_id}", headers=self._headers()
            )
        except httpx.HTTPError as exc:
            logger.error(
                "polar_subscription_cancel_failed",
                subscription_id=subscription_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if response.is_error:
            logger.error(
                "polar_subscription_cancel_failed",
                subscription_id=subscription_id,
                status_code=response.status_code,
            )
            return False
        logger.info("polar_subscription_canceled", subscription_id=subscription_id)
        return True


def summarize_subscription(subscription: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a Polar subscription document to the fields clients display."""
    metadata = subscription.get("metadata") or {}
    price = subscription.get("price") or {}
    product = subscription.get("product") or {}
    return {
        "id": subscription.get("id"),
        "status": subscription.get("status"),
        "currentPeriodStart": subscription.get("current_period_start"),
        "currentPeriodEnd": subscription.get("current_period_end"),
        "cancelAtPeriodEnd": bool(subscription.get("cancel_at_period_end")),
        "plan": metadata.get("plan") or "unknown",
        "billingCycle": metadata.get("billingCycle") or "monthly",
        "price": {
            "amount": (price.get("price_amount") or 0) / 100,
            "currency": price.get("price_currency") or "usd",
            "interval": price.get("recurring_interval") or "month",
        },
        "product": {"name": product.get("name") or "Premium"},
    }


def verify_signature(
    secret: Optional[str],
    headers: Mapping[str, str],
    body: bytes,
    *,
    now: Optional[float] = None,
) -> None:
    """Check a Standard Webhooks signature; raise ForbiddenError on any mismatch."""
    if not secret:
        logger.warning("billing_webhook_secret_missing")
        raise ForbiddenError("Invalid webhook signature")
    msg_id = headers.get("webhook-id")
    timestamp = headers.get("webhook-timestamp")
    signatures = headers.get("webhook-signature")
    if not msg_id or not timestamp or not signatures:
        raise ForbiddenError("Invalid webhook signature")
    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise ForbiddenError("Invalid webhook signature") from exc
    current = time.time() if now is None else now
    if abs(current - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
        raise ForbiddenError("Invalid webhook signature")

    signed = f"{msg_id}.{timestamp}.".encode() + body
    expected = base64.b64encode(
        hmac.new(secret.encode(), signed, hashlib.sha256).digest()
    ).decode()
    for candidate in signatures.split(" "):
        version, _, value = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(value.encode(), expected.encode()):
            return
    raise ForbiddenError("Invalid webhook signature")


def sign_payload(secret: str, msg_id: str, timestamp: int, body: bytes) -> str:
    signed = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


class PolarWebhookHandler:
    """Applies Polar billing events to the entitlement ledger."""

    def __init__(
        self,
        store: IdentityStore,
        ledger: EntitlementLedger,
        audit: AuditLog,
        notifier: DiscordNotifier,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self.notifier = notifier

    async def handle(self, service: str, payload: Dict[str, Any]) -> None:
        """Process one event. Failures are logged; the delivery is still acknowledged."""
        event_type = str(payload.get("type") or "")
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        try:
            await self._dispatch(service, event_type, data)
        except Exception as exc:
            logger.error(
                "billing_webhook_failed",
                service=service,
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        try:
            await self.notifier.notify_event(event_type, data)
        except Exception as exc:
            logger.warning("billing_notify_failed", event_type=event_type, error_type=type(exc).__name__)

    async def _dispatch(self, service: str, event_type: str, data: Dict[str, Any]) -> None:
        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        user_id = metadata.get("userId")
        if not isinstance(user_id, str) or not user_id:
            user_id = None

        if event_type == "subscription.created":
            if user_id:
                self._apply(user_id, service, data)
                self.audit.record(
                    user_id,
                    AuditAction.SUBSCRIPTION_CREATE,
                    {
                        "service": service,
                        "plan": metadata.get("plan") or "unknown",
                        "subscriptionId": data.get("id"),
                    },
                )
                if data.get("status") == "active":
                    await self._notify_payment(user_id, data)
        elif event_type in ("subscription.updated", "subscription.active"):
            if user_id:
                self._apply(user_id, service, data)
                self.audit.record(
                    user_id,
                    AuditAction.SUBSCRIPTION_UPDATE,
                    {
                        "service": service,
                        "plan": metadata.get("plan") or "unknown",
                        "status": data.get("status"),
                        "subscriptionId": data.get("id"),
                    },
                )
        elif event_type in ("subscription.canceled", "subscription.revoked"):
            if user_id:
                self.ledger.cancel_subscription(user_id, service)
                self.audit.record(
                    user_id,
                    AuditAction.SUBSCRIPTION_CANCEL,
                    {"service": service, "subscriptionId": data.get("id"), "event": event_type},
                )
        elif event_type in ("customer.created", "customer.updated"):
            if user_id is None and data.get("email"):
                user = self.store.get_user_by_email(data["email"])
                user_id = user.id if user else None
            if user_id and data.get("id"):
                self.ledger.link_customer(user_id, service, data["id"])
        elif event_type == "customer.deleted":
            if data.get("id"):
                self.ledger.clear_customer(data["id"], service)
        else:
            logger.debug("billing_webhook_ignored", service=service, event_type=event_type)

    def _apply(self, user_id: str, service: str, subscription: Dict[str, Any]) -> None:
        metadata = subscription.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        self.ledger.apply_subscription(
            user_id,
            service,
            status=subscription.get("status"),
            plan=metadata.get("plan"),
            subscription_id=subscription.get("id"),
            customer_id=subscription.get("customer_id") or subscription.get("customerId"),
        )
        logger.info(
            "billing_subscription_applied",
            user_id=user_id,
            service=service,
            status=subscription.get("status"),
        )

    async def _notify_payment(self, user_id: str, subscription: Dict[str, Any]) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            return
        metadata = subscription.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        await self.notifier.notify_payment_success(
            user_id=user.id,
            user_email=user.email,
            user_name=user.display_name,
            plan=metadata.get("plan") or "unknown",
            amount=minor_units(subscription.get("amount")),
            currency=subscription.get("currency") or "usd",
            subscription_id=subscription.get("id") or "",
            billing_cycle=metadata.get("billingCycle") or "monthly",
        )

