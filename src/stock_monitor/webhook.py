"""Webhook relay for monitor events."""

import logging

import httpx

from .models import EventType, MonitorEvent

logger = logging.getLogger(__name__)

DISCORD_MARKER = "discord.com/api/webhooks"

EVENT_TITLES = {
    EventType.RESTOCKED: "Back in Stock!",
    EventType.SOLD_OUT: "Sold Out",
    EventType.PRICE_DROP: "Price Drop!",
}

EVENT_COLOURS = {
    EventType.RESTOCKED: 0x22C55E,
    EventType.SOLD_OUT: 0x6B7280,
    EventType.PRICE_DROP: 0xEAB308,
}


def build_payload(url: str, event: MonitorEvent) -> dict:
    """Build the JSON body for ``event``.

    Args:
        url: Webhook URL; Discord URLs get an embed, others a plain text body
        event: Event to relay

    Returns:
        JSON-serializable payload
    """
    product = event.product
    title = EVENT_TITLES[event.type]

    if event.type == EventType.PRICE_DROP:
        old_price = event.old_price or 0.0
        drop = f"{event.drop_percent:.1f}%" if event.drop_percent is not None else "?"
        fields = [
            {"name": "Old Price", "value": f"${old_price:.2f}", "inline": True},
            {"name": "New Price", "value": f"${product.current_price:.2f}", "inline": True},
            {"name": "Drop", "value": drop, "inline": True},
        ]
        text = f"{title} {product.name} ${old_price:.2f} -> ${product.current_price:.2f} {product.url}"
    else:
        fields = [{"name": "Price", "value": f"${product.current_price:.2f}", "inline": True}]
        text = f"{title} {product.name} - ${product.current_price:.2f} {product.url}"

    if DISCORD_MARKER not in url:
        return {"text": text}

    embed = {
        "title": title,
        "description": product.name,
        "url": product.url,
        "color": EVENT_COLOURS[event.type],
        "fields": fields,
        "timestamp": event.timestamp.isoformat(),
    }
    if product.image_url:
        embed["thumbnail"] = {"url": product.image_url}
    return {"content": "", "embeds": [embed]}


class WebhookSink:
    """Posts events to a webhook URL."""

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize sink.

        Args:
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self.transport = transport

    async def send(self, url: str, event: MonitorEvent) -> bool:
        """Deliver ``event``; returns False on any delivery failure."""
        if not url:
            return False
        payload = build_payload(url, event)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery failed: {e}")
            return False
