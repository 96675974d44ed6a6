from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from nullpass.logging import get_logger

logger = get_logger(__name__)

_EVENT_TITLES = {
    "checkout.updated": "Checkout Updated",
    "subscription.created": "New Subscription",
    "subscription.updated": "Subscription Updated",
    "subscription.active": "Subscription Activated",
    "subscription.canceled": "Subscription Canceled",
    "subscription.revoked": "Subscription Revoked",
    "customer.created": "New Customer",
    "customer.updated": "Customer Updated",
    "customer.deleted": "Customer Deleted",
}

_EVENT_COLORS = {
    "subscription.created": 0x00FF00,
    "subscription.active": 0x00FF00,
    "subscription.canceled": 0xFF0000,
    "subscription.revoked": 0xFF0000,
    "customer.created": 0x0099FF,
    "customer.deleted": 0xFF6600,
}


def minor_units(value: Any) -> float:
    """Polar amounts are integer cents; anything non-numeric counts as zero."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return value / 100


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _format_amount(data: Dict[str, Any]) -> str:
    amount = minor_units(data.get("amount"))
    currency = str(data.get("currency") or "usd").upper()
    value = f"{amount:.2f}" if amount else "0"
    return f"{value} {currency}"


def _field(name: str, value: Any, inline: bool = True) -> Dict[str, Any]:
    return {"name": name, "value": str(value) if value not in (None, "") else "N/A", "inline": inline}


def event_embed(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Build the Discord embed describing one billing webhook event."""
    if not isinstance(data, dict):
        data = {}
    if event_type == "checkout.updated":
        color = 0x00FF00 if data.get("status") == "succeeded" else 0xFFAA00
    else:
        color = _EVENT_COLORS.get(event_type, 0x666666)

    fields: List[Dict[str, Any]]
    if event_type == "checkout.updated":
        fields = [
            _field("Status", data.get("status")),
            _field("Customer", data.get("customerEmail") or data.get("customer_email")),
            _field("Amount", _format_amount(data)),
        ]
    elif event_type.startswith("subscription."):
        fields = [
            _field("Plan", _section(data, "metadata").get("plan") or "Unknown"),
            _field("Customer", _section(data, "customer").get("email")),
            _field("Status", data.get("status")),
            _field("Amount", _format_amount(data)),
        ]
    elif event_type in ("customer.created", "customer.updated"):
        fields = [_field("Email", data.get("email")), _field("Name", data.get("name"))]
    elif event_type == "customer.deleted":
        fields = [_field("Customer ID", data.get("id"))]
    else:
        fields = [_field("Event Type", event_type)]

    return {
        "title": _EVENT_TITLES.get(event_type, "Polar Webhook Event"),
        "color": color,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "fields": fields,
    }


def payment_success_embed(
    *,
    user_id: str,
    user_email: str,
    plan: str,
    amount: float,
    currency: str,
    subscription_id: str,
    billing_cycle: str,
    user_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "title": "Payment Successful",
        "description": "New premium subscription activated!",
        "color": 0x00FF00,
        "fields": [
            _field("User", user_name or user_email),
            _field("Email", user_email),
            _field("Plan", plan.upper()),
            _field("Amount", f"{amount:g} {currency.upper()}"),
            _field("Billing Cycle", billing_cycle),
            _field("Subscription ID", f"`{subscription_id}`", inline=False),
            _field("User ID", f"`{user_id}`", inline=False),
        ],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": "NullPass - Payment System"},
    }


class DiscordNotifier:
    """Posts operator notifications to a Discord webhook.

    Delivery is best-effort; ``send`` reports success as a bool and never raises.
    """

    def __init__(self, webhook_url: Optional[str], client: httpx.AsyncClient) -> None:
        self.webhook_url = webhook_url
        self.client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, payload: Dict[str, Any]) -> bool:
        if not self.webhook_url:
            return False
        try:
            response = await self.client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("discord_notify_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        if response.is_error:
            logger.warning("discord_notify_rejected", status_code=response.status_code)
            return False
        return True

    async def notify_event(self, event_type: str, data: Dict[str, Any]) -> bool:
        if not self.webhook_url:
            return False
        try:
            embed = event_embed(event_type, data)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("discord_embed_failed", event_type=event_type, error_type=type(exc).__name__)
            return False
        return await self.send({"embeds": [embed]})

    async def notify_payment_success(self, **details: Any) -> bool:
        return await self.send({"embeds": [payment_success_embed(**details)]})
