"""Decoding of Gmail push notifications delivered through Cloud Pub/Sub."""

from __future__ import annotations

import base64
import binascii
import json
import logging

from .errors import DecodeError
from .models import NotificationEvent

logger = logging.getLogger(__name__)


def _b64decode_urlsafe(data: str) -> bytes:
    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized, validate=True)


def _parse_history_id(value) -> int:  # noqa: ANN001
    if value in (None, ""):
        return 0
    if isinstance(value, bool):
        raise DecodeError(f"Invalid historyId: {value!r}")
    try:
        history_id = int(value)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"Invalid historyId: {value!r}") from exc
    if history_id < 0:
        raise DecodeError(f"Invalid historyId: {value!r}")
    return history_id


def decode_notification(raw: bytes | str) -> NotificationEvent:
    """Decode a Pub/Sub push envelope into a :class:`NotificationEvent`.

    Envelope shape::

        {"message": {"data": "<url-safe base64 JSON>", "messageId": "...",
                     "publishTime": "...", "attributes": {...}},
         "subscription": "..."}

    A missing ``message`` or empty ``data`` yields an inert event; anything
    that cannot be parsed once data is present raises :class:`DecodeError`.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"Notification body is not UTF-8: {exc}") from exc

    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Notification body is not JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise DecodeError("Notification body is not a JSON object")

    message = envelope.get("message") or {}
    if not isinstance(message, dict):
        raise DecodeError("Notification 'message' is not an object")
    pubsub_message_id = str(message.get("messageId") or message.get("message_id") or "")
    publish_time = str(message.get("publishTime") or message.get("publish_time") or "")

    data = message.get("data")
    if not data:
        logger.warning("No message data found in notification %s", pubsub_message_id or "<unknown>")
        return NotificationEvent(pubsub_message_id=pubsub_message_id, publish_time=publish_time)

    try:
        decoded = _b64decode_urlsafe(str(data)).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Notification data is not valid base64: {exc}") from exc

    try:
        inner = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Notification data is not JSON: {exc}") from exc
    if not isinstance(inner, dict):
        raise DecodeError("Notification data is not a JSON object")

    logger.debug("Decoded notification data: %s", inner)

    event = NotificationEvent(
        account=str(inner.get("emailAddress") or inner.get("email") or ""),
        message_id=str(inner.get("emailId") or inner.get("messageId") or ""),
        history_id=_parse_history_id(inner.get("historyId")),
        pubsub_message_id=pubsub_message_id,
        publish_time=publish_time,
    )
    if event.kind == "inert":
        logger.warning("No message ID or valid history ID found in notification %s", pubsub_message_id)
    return event
