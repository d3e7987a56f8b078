"""
Cloudmailin inbound webhook router.

The endpoint accepts all three Cloudmailin HTTP POST formats:
  - form bodies (multipart/form-data or urlencoded) are decoded into a nested
    dict using Rack-style bracket keys: "envelope[spf][result]",
    "headers[Received]" (repeated), "attachments[0]" (uploaded file);
  - any other body is read as JSON.

Which parser runs is still decided by CLOUDMAILIN_HTTP_POST_FORMAT; the body
encoding only decides how the request is read.

Endpoints:
  POST /inbound   — Cloudmailin webhook
"""

import logging
import re
from typing import Iterable, Tuple

from fastapi import APIRouter, HTTPException, Request

from mailbridge.errors import InvalidFormat
from mailbridge.models.message import Message
from mailbridge.services.cloudmailin_receiver import is_spam, is_valid, transform

logger = logging.getLogger(__name__)

router = APIRouter()

_FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")
_KEY_SEGMENT = re.compile(r"\[([^\]]*)\]")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _split_key(key: str) -> list[str]:
    """
    Split a bracketed form key into its path:
      "envelope[spf][result]" -> ["envelope", "spf", "result"]
      "headers[Received][]"   -> ["headers", "Received"]
    """
    head, bracket, rest = key.partition("[")
    if not bracket:
        return [key]
    return [head] + [segment for segment in _KEY_SEGMENT.findall(bracket + rest) if segment]


def nest_form_fields(items: Iterable[Tuple[str, object]]) -> dict:
    """
    Build a nested dict from flat (key, value) form items.

    A key that appears more than once collects its values into a list, in
    submission order.
    """
    nested: dict = {}
    for key, value in items:
        path = _split_key(key)
        node = nested
        for segment in path[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = node[segment] = {}
            node = child

        leaf = path[-1]
        if leaf not in node:
            node[leaf] = value
        elif isinstance(node[leaf], list):
            node[leaf].append(value)
        else:
            node[leaf] = [node[leaf], value]
    return nested


async def _read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_CONTENT_TYPES):
        form = await request.form()
        return nest_form_fields(form.multi_items())

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


def _summarize(message: Message) -> dict:
    return {
        "from": message["From"],
        "to": message["To"],
        "subject": message["Subject"],
        "spam": is_spam(message),
        "parts": [part.content_type for part in message.parts if not part.is_attachment],
        "attachments": [part.filename for part in message.attachments],
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/inbound")
async def receive_inbound_email(request: Request) -> dict:
    """
    Cloudmailin webhook receiver.

    Returns 200 with processed=False when the deployment is configured with
    an unsupported HTTP POST format, so Cloudmailin does not keep retrying a
    request that can never succeed.
    """
    payload = await _read_payload(request)

    if not is_valid(payload):
        raise HTTPException(status_code=403, detail="Request did not originate from Cloudmailin")

    try:
        messages = transform(payload)
    except InvalidFormat as exc:
        logger.error(f"Webhook transform failed: {exc}")
        return {"received": True, "processed": False, "reason": "unsupported_format"}

    summaries = [_summarize(message) for message in messages]
    for summary in summaries:
        logger.info(
            "Received message %r from %s (spam=%s, attachments=%d)",
            summary["subject"],
            summary["from"],
            summary["spam"],
            len(summary["attachments"]),
        )

    return {"received": True, "processed": True, "messages": summaries}
