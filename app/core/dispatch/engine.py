# app/core/dispatch/engine.py
"""
Fan-out of one piece of content to a list of endpoints.

Endpoints are visited serially, in resolution order, and every endpoint
gets exactly one ``DispatchOutcome``.  A failing endpoint never stops the
loop and nothing is retried.  The only aborts happen before the first
network call: empty content and an empty endpoint list.
"""
from __future__ import annotations

from app.core.dispatch.composer import ensure_dispatchable
from app.core.dispatch.domain import (
    CardContent,
    CardPayload,
    Content,
    DeliveryEndpoint,
    DispatchOutcome,
    DispatchSummary,
    ImagePayload,
    MarkdownPayload,
    Payload,
    RichTextContent,
    TextImageContent,
)
from app.core.dispatch.errors import NoEndpointsError, ValidationError
from app.core.dispatch.ports import DeliveryTransport
from app.infra.logging_config import LogContext, get_logger, mask_webhook
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


def build_payloads(content: Content) -> list[Payload]:
    """
    Wire payloads sent to each endpoint, in call order.

    Raises:
        ValidationError: the embedded image cannot be decoded and there is no text
    """
    if isinstance(content, CardContent):
        return [CardPayload(
            title=content.title,
            url=content.url,
            description=content.description,
            picture_url=content.picture_url,
        )]

    if isinstance(content, RichTextContent):
        return [MarkdownPayload(text=content.rich_text)]

    if isinstance(content, TextImageContent):
        payloads: list[Payload] = []
        if content.has_text():
            payloads.append(MarkdownPayload(text=content.text))
        if content.image is not None:
            try:
                data = content.image.decode()
            except ValueError as e:
                # Older rows may hold an image URL here instead of base64
                if not payloads:
                    raise ValidationError({"image": "not valid base64"})
                logger.warning(f"Stored image is not valid base64, sending text only: {e}")
            else:
                payloads.append(ImagePayload(
                    data=data,
                    filename=content.image.filename,
                    mime_type=content.image.mime_type,
                ))
        return payloads

    raise ValidationError({"type": f"unknown content {type(content).__name__}"})


class DispatchEngine:
    def __init__(self, transport: DeliveryTransport):
        self.transport = transport

    async def dispatch(
        self,
        content: Content,
        endpoints: list[DeliveryEndpoint],
        *,
        task_id: str | None = None,
    ) -> DispatchSummary:
        """
        Send ``content`` to every endpoint and aggregate the outcomes.

        Raises:
            ValidationError: content is empty or its image is corrupt
            NoEndpointsError: ``endpoints`` is empty
        """
        log = LogContext(logger, task_id=task_id)

        ensure_dispatchable(content)
        payloads = build_payloads(content)
        if not endpoints:
            inc_counter("dispatch_runs", status="aborted")
            raise NoEndpointsError()

        log.info(
            f"Dispatching {content.type.value} to {len(endpoints)} endpoints "
            f"({len(payloads)} calls each)"
        )

        outcomes: list[DispatchOutcome] = []
        for endpoint in endpoints:
            outcome = await self._deliver(endpoint, payloads, log)
            outcomes.append(outcome)
            inc_counter("dispatch_outcomes", result="success" if outcome.success else "failure")

        summary = DispatchSummary.from_outcomes(outcomes)
        inc_counter("dispatch_runs", status=summary.terminal_status.value)

        if summary.succeeded:
            log.info(f"Dispatch finished: {summary.message()}")
        else:
            log.warning(f"Dispatch finished with failures: {summary.message()}")
        return summary

    async def _deliver(
        self,
        endpoint: DeliveryEndpoint,
        payloads: list[Payload],
        log: LogContext,
    ) -> DispatchOutcome:
        """All calls for one endpoint; the most recent error wins."""
        ep_log = log.bind(endpoint=mask_webhook(endpoint.url))
        success = True
        error: str | None = None

        for payload in payloads:
            try:
                result = await self.transport.send(endpoint, payload)
            except Exception as exc:
                success = False
                error = str(exc) or type(exc).__name__
                inc_counter("dispatch_calls", kind=payload.kind, result="error")
                ep_log.warning(f"{payload.kind} call raised {type(exc).__name__}: {error}")
                continue

            if result.success:
                inc_counter("dispatch_calls", kind=payload.kind, result="ok")
                ep_log.debug(f"{payload.kind} call ok")
            else:
                success = False
                error = result.error_message or f"errcode {result.error_code}"
                inc_counter("dispatch_calls", kind=payload.kind, result="error")
                ep_log.warning(
                    f"{payload.kind} call rejected: {error}",
                    extra={"error_code": result.error_code},
                )

        return DispatchOutcome(endpoint=endpoint, success=success, error=error)
