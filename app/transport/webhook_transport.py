# app/transport/webhook_transport.py
"""
Direct delivery to group-bot webhooks.

Message bodies follow the bot API:

    {"msgtype": "news",     "news": {"articles": [...]}}
    {"msgtype": "markdown", "markdown": {"content": "..."}}
    {"msgtype": "image",    "image": {"base64": "...", "md5": "..."}}

Images above the bot's size limit are re-encoded first (Pillow, in a worker
thread).  Images that cannot be brought under the limit, or that exceed
``image_max_file_size_mb`` to begin with, fail that call without any
network request.
"""
from __future__ import annotations

import asyncio
import base64

from app.config import settings
from app.core.dispatch.domain import (
    CardPayload,
    DeliveryEndpoint,
    ImagePayload,
    MarkdownPayload,
    Payload,
    SendResult,
)
from app.core.dispatch.errors import TransportError
from app.infra.image_processor import ImageError, compress_for_webhook, image_md5
from app.infra.logging_config import get_logger, mask_webhook
from app.transport.delivery_http import post_and_classify
from app.transport.relay_transport import card_article

logger = get_logger(__name__)


class WebhookTransport:
    def __init__(
        self,
        target_image_bytes: int | None = None,
        max_image_bytes: int | None = None,
    ):
        self.target_image_bytes = target_image_bytes or settings.image_target_size_bytes
        self.max_image_bytes = max_image_bytes or settings.image_max_file_size_bytes

    async def send(self, endpoint: DeliveryEndpoint, payload: Payload) -> SendResult:
        if isinstance(payload, CardPayload):
            body = {"msgtype": "news", "news": {"articles": [card_article(payload)]}}
        elif isinstance(payload, MarkdownPayload):
            body = {"msgtype": "markdown", "markdown": {"content": payload.text}}
        elif isinstance(payload, ImagePayload):
            body = await self._image_body(payload, endpoint)
        else:
            raise TransportError(f"unsupported payload {type(payload).__name__}")

        return await post_and_classify(endpoint.url, json=body)

    async def _image_body(self, payload: ImagePayload, endpoint: DeliveryEndpoint) -> dict:
        try:
            data = await asyncio.to_thread(
                compress_for_webhook, payload.data, self.target_image_bytes, self.max_image_bytes,
            )
        except ImageError as e:
            logger.warning(
                f"Image rejected before sending to {mask_webhook(endpoint.url)}: {e}",
                extra={"endpoint": mask_webhook(endpoint.url)},
            )
            raise TransportError(f"image rejected: {e}")

        return {
            "msgtype": "image",
            "image": {
                "base64": base64.b64encode(data).decode("ascii"),
                "md5": image_md5(data),
            },
        }
