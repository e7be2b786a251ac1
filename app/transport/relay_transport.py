# app/transport/relay_transport.py
"""
Delivery through the push relay.

The relay accepts one request per call and forwards it to the group bot:

    card      JSON  {"webhook", "news": {"articles": [{title, description?, url, picurl?}]}}
    markdown  JSON  {"webhook", "type": "rich_text", "text"}
    image     multipart form: webhook, image (binary), userId

The relay answers with the bot's own ``{"errcode": ..., "errmsg": ...}``
body, or ``{"error": ...}`` when it rejects the request itself.
"""
from __future__ import annotations

import aiohttp

from app.core.dispatch.domain import (
    CardPayload,
    DeliveryEndpoint,
    ImagePayload,
    MarkdownPayload,
    Payload,
    SendResult,
)
from app.core.dispatch.errors import TransportError
from app.infra.logging_config import get_logger, mask_webhook
from app.transport.delivery_http import post_and_classify

logger = get_logger(__name__)


def card_article(payload: CardPayload) -> dict:
    """One news article in bot field names (``picurl``)."""
    article = {"title": payload.title, "url": payload.url}
    if payload.description:
        article["description"] = payload.description
    if payload.picture_url:
        article["picurl"] = payload.picture_url
    return article


class RelayTransport:
    def __init__(self, relay_url: str):
        if not relay_url:
            raise ValueError("relay_url is required for the relay transport")
        self.relay_url = relay_url

    async def send(self, endpoint: DeliveryEndpoint, payload: Payload) -> SendResult:
        if isinstance(payload, CardPayload):
            return await post_and_classify(
                self.relay_url,
                json={"webhook": endpoint.url, "news": {"articles": [card_article(payload)]}},
            )

        if isinstance(payload, MarkdownPayload):
            return await post_and_classify(
                self.relay_url,
                json={"webhook": endpoint.url, "type": "rich_text", "text": payload.text},
            )

        if isinstance(payload, ImagePayload):
            form = aiohttp.FormData()
            form.add_field("webhook", endpoint.url)
            form.add_field(
                "image",
                payload.data,
                filename=payload.filename,
                content_type=payload.mime_type,
            )
            form.add_field("userId", endpoint.owner_id)
            logger.debug(
                f"Relaying image ({len(payload.data)} bytes) for {mask_webhook(endpoint.url)}"
            )
            return await post_and_classify(self.relay_url, data=form)

        raise TransportError(f"unsupported payload {type(payload).__name__}")
