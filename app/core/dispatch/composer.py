# app/core/dispatch/composer.py
"""
Content composition: raw form fields -> one of the three content variants.

Image embedding is lenient.  A local image that cannot be encoded does not
abort composition; the content comes back without it and a warning is
attached to the result.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from app.core.dispatch.domain import (
    CardContent,
    Content,
    EmbeddedImage,
    RichTextContent,
    TaskType,
    TextImageContent,
)
from app.core.dispatch.errors import ValidationError
from app.infra.image_processor import ImageError, embed_image
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Bot API limits
MAX_MARKDOWN_CHARS = 4096
MAX_CARD_TITLE_CHARS = 128
MAX_CARD_DESCRIPTION_CHARS = 512


@dataclass(frozen=True)
class LocalImage:
    """An image picked from disk / uploaded, not yet embedded."""
    data: bytes
    filename: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class ComposeResult:
    content: Content
    warnings: list[str] = field(default_factory=list)


def _text(fields: Mapping[str, Any], *names: str) -> str:
    for name in names:
        value = fields.get(name)
        if isinstance(value, str):
            return value
    return ""


def _is_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


# ---------------------------------------------------------------------------
# Per-variant builders
# ---------------------------------------------------------------------------

def _compose_text_image(
    fields: Mapping[str, Any],
    image: LocalImage | None,
    warnings: list[str],
    max_image_bytes: int | None,
) -> TextImageContent:
    text = _text(fields, "text")
    errors: dict[str, str] = {}
    if len(text) > MAX_MARKDOWN_CHARS:
        errors["text"] = f"longer than {MAX_MARKDOWN_CHARS} characters"

    embedded: EmbeddedImage | None = None
    if image is not None:
        try:
            embedded = embed_image(image.data, image.filename, image.mime_type, max_bytes=max_image_bytes)
        except ImageError as e:
            logger.warning(f"Image could not be embedded, continuing without it: {e}")
            warnings.append(f"image dropped: {e}")
    else:
        # Already-embedded image coming back from an edit form
        raw = fields.get("image")
        if isinstance(raw, Mapping):
            embedded = EmbeddedImage.from_dict(dict(raw))
            if embedded is not None:
                try:
                    embedded.decode()
                except ValueError as e:
                    logger.warning(f"Stored image is corrupt, continuing without it: {e}")
                    warnings.append("image dropped: not valid base64")
                    embedded = None

    content = TextImageContent(text=text, image=embedded)
    if content.is_empty():
        errors["text"] = "text or image is required"
    if errors:
        raise ValidationError(errors)
    return content


def _compose_rich_text(fields: Mapping[str, Any]) -> RichTextContent:
    rich_text = _text(fields, "rich_text", "richText")
    if not rich_text.strip():
        raise ValidationError({"rich_text": "required"})
    if len(rich_text) > MAX_MARKDOWN_CHARS:
        raise ValidationError({"rich_text": f"longer than {MAX_MARKDOWN_CHARS} characters"})
    return RichTextContent(rich_text=rich_text)


def _compose_card(fields: Mapping[str, Any]) -> CardContent:
    title = _text(fields, "title").strip()
    url = _text(fields, "url").strip()
    description = _text(fields, "description").strip() or None
    picture_url = _text(fields, "picture_url", "picurl").strip() or None

    errors: dict[str, str] = {}
    if not title:
        errors["title"] = "required"
    elif len(title) > MAX_CARD_TITLE_CHARS:
        errors["title"] = f"longer than {MAX_CARD_TITLE_CHARS} characters"

    if not url:
        errors["url"] = "required"
    elif not _is_http_url(url):
        errors["url"] = "must be an http(s) URL"

    if description and len(description) > MAX_CARD_DESCRIPTION_CHARS:
        errors["description"] = f"longer than {MAX_CARD_DESCRIPTION_CHARS} characters"
    if picture_url and not _is_http_url(picture_url):
        errors["picture_url"] = "must be an http(s) URL"

    if errors:
        raise ValidationError(errors)
    return CardContent(title=title, url=url, description=description, picture_url=picture_url)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compose_and_validate(
    task_type: TaskType | str,
    fields: Mapping[str, Any] | None,
    image: LocalImage | None = None,
    *,
    max_image_bytes: int | None = None,
) -> ComposeResult:
    """
    Validate raw fields and build the content variant for ``task_type``.

    Raises:
        ValidationError: with every missing or invalid field
    """
    try:
        task_type = TaskType(task_type)
    except ValueError:
        raise ValidationError({"type": f"unknown message type {task_type!r}"})

    fields = fields or {}
    warnings: list[str] = []

    if task_type is TaskType.TEXT_IMAGE:
        content: Content = _compose_text_image(fields, image, warnings, max_image_bytes)
    elif task_type is TaskType.RICH_TEXT:
        content = _compose_rich_text(fields)
    elif task_type is TaskType.CARD:
        content = _compose_card(fields)
    else:  # pragma: no cover
        raise ValidationError({"type": f"unhandled message type {task_type.value}"})

    if image is not None and task_type is not TaskType.TEXT_IMAGE:
        warnings.append(f"image ignored for {task_type.value} messages")

    return ComposeResult(content=content, warnings=warnings)


def ensure_dispatchable(content: Content) -> None:
    """Re-check content right before sending (stored tasks may predate validation)."""
    if isinstance(content, TextImageContent):
        if content.is_empty():
            raise ValidationError({"text": "text or image is required"})
    elif isinstance(content, RichTextContent):
        if not content.rich_text.strip():
            raise ValidationError({"rich_text": "required"})
    elif isinstance(content, CardContent):
        missing = {name: "required" for name in ("title", "url") if not getattr(content, name)}
        if missing:
            raise ValidationError(missing)
    else:
        raise ValidationError({"type": f"unknown content {type(content).__name__}"})
