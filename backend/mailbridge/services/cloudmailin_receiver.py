"""
Cloudmailin inbound webhook receiver.

Normalizes the three Cloudmailin HTTP POST formats into the canonical
Message model:

  raw        {message: <MIME document>, envelope: {...}}
  multipart  form fields: headers[...], plain, html, reply_plain,
             envelope[...], attachments[N] (uploaded files)
  json       same shape as multipart, attachment content base64-encoded

The format is configured per deployment (CLOUDMAILIN_HTTP_POST_FORMAT) and
can be overridden per call. An unset format means "raw".

Cloudmailin's SPF verdict is copied onto the message as X-Mailgun-Spf so
that spam checks work the same way for every provider.

Adding a new format:
  1. Add a member to HttpPostFormat.
  2. Write a parse_<format>(payload: dict) -> Message function.
  3. Register it in _PARSERS.
"""

import base64
import email
import email.policy
import logging
import mimetypes
from collections.abc import Mapping
from email.message import EmailMessage
from enum import Enum
from typing import Callable, Optional

from mailbridge.config import get_http_post_format
from mailbridge.errors import InvalidFormat
from mailbridge.models.message import Body, Headers, Message, Part, normalize_newlines
from mailbridge.services.flattener import flatten_message

logger = logging.getLogger(__name__)

SPF_HEADER = "X-Mailgun-Spf"
REPLY_PLAIN_HEADER = "reply_plain"
HTML_CONTENT_TYPE = "text/html; charset=UTF-8"
DEFAULT_ATTACHMENT_TYPE = "application/octet-stream"


class HttpPostFormat(str, Enum):
    RAW = "raw"
    MULTIPART = "multipart"
    JSON = "json"


def resolve_http_post_format(value: Optional[str]) -> HttpPostFormat:
    """
    Map a configured selector to an HttpPostFormat.

    None and blank strings mean RAW. Raises InvalidFormat for anything else
    that is not a known format.
    """
    if isinstance(value, HttpPostFormat):
        return value
    normalized = (value or "").strip().lower()
    if not normalized:
        return HttpPostFormat.RAW
    try:
        return HttpPostFormat(normalized)
    except ValueError:
        raise InvalidFormat(value) from None


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _spf_result(payload: dict) -> Optional[str]:
    envelope = payload.get("envelope") or {}
    spf = envelope.get("spf") or {}
    return spf.get("result")


def _inject_spf(message: Message, payload: dict) -> None:
    result = _spf_result(payload)
    if result is not None:
        message[SPF_HEADER] = result


def _field(obj, *names):
    """First non-None value among ``names``, read as keys or attributes."""
    for name in names:
        if isinstance(obj, Mapping):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _iter_attachments(attachments):
    # Form submissions index attachments by position: {"0": ..., "1": ...}
    if isinstance(attachments, Mapping):
        return list(attachments.values())
    return list(attachments or [])


def _guess_content_type(filename: Optional[str]) -> str:
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return guessed
    return DEFAULT_ATTACHMENT_TYPE


def _attachment_part(filename: Optional[str], content: bytes, content_type: Optional[str]) -> Part:
    return Part(
        content_type=content_type or _guess_content_type(filename),
        body=content,
        filename=filename,
        disposition="attachment",
    )


def _read_upload(attachment) -> Part:
    """Read a multipart-form attachment fully into memory."""
    filename = _field(attachment, "filename", "file_name")
    handle = _field(attachment, "tempfile", "file", "content")
    if hasattr(handle, "read"):
        content = handle.read()
    else:
        content = handle if handle is not None else b""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return _attachment_part(filename, content, _field(attachment, "content_type", "type"))


def _decode_inline(attachment) -> Part:
    """Decode a JSON attachment whose content is base64 text."""
    filename = _field(attachment, "file_name", "filename")
    content = base64.b64decode(_field(attachment, "content") or "")
    return _attachment_part(filename, content, _field(attachment, "content_type"))


def _build_structured_message(payload: dict, attachment_reader: Callable) -> Message:
    """Shared body of the multipart and JSON parsers."""
    parts = [Part(content_type="text/plain", body=payload.get("plain") or "")]
    if "html" in payload:
        parts.append(Part(content_type=HTML_CONTENT_TYPE, body=payload.get("html") or ""))

    attachments = [
        attachment_reader(attachment)
        for attachment in _iter_attachments(payload.get("attachments"))
    ]

    message = Message(
        headers=Headers.from_mapping(payload.get("headers")),
        content_type="multipart/mixed" if attachments else "multipart/alternative",
        parts=parts + attachments,
    )

    # Multipart posts use CRLF and JSON posts use LF; store LF.
    reply_plain = payload.get("reply_plain")
    if reply_plain is not None:
        message[REPLY_PLAIN_HEADER] = normalize_newlines(reply_plain)
    _inject_spf(message, payload)
    return message


# ---------------------------------------------------------------------------
# Raw MIME
# ---------------------------------------------------------------------------

def _leaf_body(mime: EmailMessage) -> Body:
    maintype = mime.get_content_maintype()
    if maintype == "text":
        try:
            return mime.get_content()
        except LookupError:
            # Charset label unknown to Python (x-unknown, unknown-8bit, ...)
            logger.debug("Unknown charset %r, decoding as UTF-8", mime.get_content_charset())
            return (mime.get_payload(decode=True) or b"").decode("utf-8", errors="replace")
    if maintype == "message" and mime.is_multipart():
        return b"".join(inner.as_bytes() for inner in mime.get_payload())
    return mime.get_payload(decode=True) or b""


def _headers_of(mime: EmailMessage) -> Headers:
    headers = Headers()
    for name, value in mime.items():
        headers.add(name, value)
    return headers


def _content_type_of(mime: EmailMessage) -> str:
    header = mime.get("Content-Type")
    return str(header) if header is not None else mime.get_content_type()


def _part_from_mime(mime: EmailMessage) -> Part:
    part = Part(
        content_type=_content_type_of(mime),
        filename=mime.get_filename(),
        disposition=mime.get_content_disposition(),
        headers=_headers_of(mime),
    )
    if mime.get_content_maintype() == "multipart":
        part.parts = [_part_from_mime(child) for child in mime.iter_parts()]
        part.preamble = mime.preamble
        part.epilogue = mime.epilogue
    else:
        part.body = _leaf_body(mime)
    return part


def _message_from_mime(mime: EmailMessage) -> Message:
    message = Message(headers=_headers_of(mime), content_type=_content_type_of(mime))
    if mime.get_content_maintype() == "multipart":
        message.parts = [_part_from_mime(child) for child in mime.iter_parts()]
        message.preamble = mime.preamble
        message.epilogue = mime.epilogue
    else:
        message.body = _leaf_body(mime)
    return message


def parse_raw(payload: dict) -> Message:
    """
    Parse a raw-format payload. The resulting tree may be nested; transform()
    flattens it.
    """
    raw = payload.get("message") or ""
    if isinstance(raw, bytes):
        mime = email.message_from_bytes(raw, policy=email.policy.default)
    else:
        mime = email.message_from_string(raw, policy=email.policy.default)

    message = _message_from_mime(mime)
    # The rest of the envelope (from, to, recipients, helo_domain,
    # remote_ip) is discarded.
    _inject_spf(message, payload)
    return message


# ---------------------------------------------------------------------------
# Multipart form / JSON
# ---------------------------------------------------------------------------

def parse_multipart(payload: dict) -> Message:
    """Attachments arrive as uploaded files: {filename, tempfile/file}."""
    return _build_structured_message(payload, _read_upload)


def parse_json(payload: dict) -> Message:
    """Attachments arrive inline: {file_name, content (base64), content_type}."""
    return _build_structured_message(payload, _decode_inline)


# ---------------------------------------------------------------------------
# Registry and facade
# ---------------------------------------------------------------------------

_PARSERS: dict[HttpPostFormat, Callable[[dict], Message]] = {
    HttpPostFormat.RAW: parse_raw,
    HttpPostFormat.MULTIPART: parse_multipart,
    HttpPostFormat.JSON: parse_json,
}


def is_valid(payload: dict) -> bool:
    """
    Whether the request originates from Cloudmailin.

    Cloudmailin does not sign its requests (protection is by URL secret or
    basic auth at the HTTP layer), so every payload is accepted.
    """
    return True


def transform(payload: dict, http_post_format: Optional[str] = None) -> list[Message]:
    """
    Convert a Cloudmailin webhook payload into canonical messages.

    Format priority:
      1. http_post_format argument
      2. CLOUDMAILIN_HTTP_POST_FORMAT env var
      3. Default: raw

    Always returns a single-element list today. Raises InvalidFormat for
    unknown formats.
    """
    selector = http_post_format if http_post_format is not None else get_http_post_format()
    post_format = resolve_http_post_format(selector)

    message = _PARSERS[post_format](payload)
    if post_format is HttpPostFormat.RAW:
        flatten_message(message)

    logger.debug(
        "Transformed %s payload into message with %d parts",
        post_format.value,
        len(message.parts),
    )
    return [message]


def is_spam(message: Message) -> bool:
    """Spam iff the forwarded SPF verdict is exactly "fail"."""
    return message[SPF_HEADER] == "fail"
