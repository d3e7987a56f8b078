"""
Postmark outbound sender.

Turns a canonical Message into a Postmark "send email" request body, POSTs it
and maps failures onto typed DeliveryError subclasses.

Postmark reference:
  https://postmarkapp.com/developer/user-guide/send-email-with-api
  https://postmarkapp.com/developer/api/overview#error-codes

Environment variables
---------------------
POSTMARK_API_KEY    Server token, used when no api_key is passed.
POSTMARK_API_URL    Override the endpoint (default: https://api.postmarkapp.com/email).
POSTMARK_TIMEOUT    Request timeout in seconds (default: 10).
"""

import base64
import logging
from typing import Optional, Union

import httpx

from mailbridge.config import get_postmark_api_key, get_postmark_api_url, get_postmark_timeout
from mailbridge.errors import (
    DeliveryError,
    InvalidAPIKey,
    InvalidHeader,
    InvalidMessage,
    InvalidRequest,
    MissingBody,
    MissingRecipients,
    MissingSender,
)
from mailbridge.models.message import Message, Part

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_ERROR_CODE_INVALID_API_KEY = 10
_ERROR_CODE_INVALID_MESSAGE = 300

# Postmark error 300 covers every invalid-email case; the message text is
# the only way to tell them apart.
_INVALID_MESSAGE_ERRORS: dict[str, type[DeliveryError]] = {
    "Header 'Content-Type' not allowed.": InvalidHeader,
    "Header 'Date' not allowed.": InvalidHeader,
    "Invalid 'From' value.": MissingSender,
    "Zero recipients specified": MissingRecipients,
    "Provide either email TextBody or HtmlBody or both.": MissingBody,
}

# Message headers that map to dedicated Postmark fields instead of "Headers".
_ADDRESS_FIELDS = {
    "From": "From",
    "To": "To",
    "Cc": "Cc",
    "Bcc": "Bcc",
    "Reply-To": "ReplyTo",
}
_SKIPPED_HEADERS = {
    "from", "to", "cc", "bcc", "reply-to", "subject", "x-pm-tag",
    "content-type", "content-transfer-encoding", "mime-version", "date",
}

_TRACK_OPENS_STRINGS = {"yes": True, "no": False}


def _text(body: Union[str, bytes], charset: str = "utf-8") -> str:
    if isinstance(body, bytes):
        return body.decode(charset, errors="replace")
    return body


def _attachment_payload(part: Part) -> dict:
    content = part.decoded()
    if isinstance(content, str):
        content = content.encode(part.charset, errors="replace")
    return {
        "Name": part.filename or "attachment",
        "Content": base64.b64encode(content).decode(),
        "ContentType": part.mime_type,
    }


def to_postmark_payload(message: Message) -> dict:
    """
    Build the Postmark request body for ``message``.

    Empty fields are omitted so Postmark reports its own validation errors
    (e.g. "Zero recipients specified") instead of rejecting blank strings.
    """
    payload: dict = {}
    for header, field in _ADDRESS_FIELDS.items():
        values = message.headers.get_all(header)
        if values:
            payload[field] = ", ".join(values)

    payload["Subject"] = message["Subject"]
    payload["Tag"] = message["X-PM-Tag"]

    if message.is_multipart:
        text_part = message.text_part
        html_part = message.html_part
        if text_part is not None:
            payload["TextBody"] = _text(text_part.decoded(), text_part.charset)
        if html_part is not None:
            payload["HtmlBody"] = _text(html_part.decoded(), html_part.charset)
    elif message.content_type.lower().startswith("text/html"):
        payload["HtmlBody"] = _text(message.body)
    else:
        payload["TextBody"] = _text(message.body)

    payload["Headers"] = [
        {"Name": name, "Value": value}
        for name, value in message.headers.items()
        if name.lower() not in _SKIPPED_HEADERS
    ]
    payload["Attachments"] = [_attachment_payload(part) for part in message.attachments]

    return {key: value for key, value in payload.items() if value}


class PostmarkSender:
    """
    Deliver messages through the Postmark API.

    Args:
        api_key:         Postmark server token (falls back to POSTMARK_API_KEY).
        return_response: Return the decoded API response from deliver()
                         instead of True.
        track:           Tracking options; only "opens" is recognized.
        client:          Optional httpx.Client (tests pass one with a
                         MockTransport).
        **settings:      Extra top-level fields merged into every request
                         body, e.g. MessageStream="outbound".
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        return_response: bool = False,
        track: Optional[dict] = None,
        client: Optional[httpx.Client] = None,
        **settings,
    ):
        self.api_key = api_key or get_postmark_api_key()
        if not self.api_key:
            raise ValueError("Missing required option: api_key (or POSTMARK_API_KEY)")
        self.return_response = return_response
        self.tracking = dict(track or {})
        self.settings = settings
        self._client = client

    def parameters(self) -> dict:
        """Additional top-level request fields."""
        parameters = dict(self.settings)

        if "opens" in self.tracking:
            opens = self.tracking["opens"]
            if opens is None or isinstance(opens, bool):
                parameters["TrackOpens"] = opens
            elif isinstance(opens, str) and opens in _TRACK_OPENS_STRINGS:
                parameters["TrackOpens"] = _TRACK_OPENS_STRINGS[opens]
            # Any other value (e.g. "htmlonly") is left unset.

        return parameters

    def _post(self, body: dict) -> httpx.Response:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Postmark-Server-Token": self.api_key,
        }
        url = get_postmark_api_url()
        timeout = get_postmark_timeout()
        if self._client is not None:
            return self._client.post(url, json=body, headers=headers, timeout=timeout)
        return httpx.post(url, json=body, headers=headers, timeout=timeout)

    def deliver(self, message: Message):
        """
        Send ``message``.

        Returns the decoded response body when return_response is set,
        otherwise True.

        Raises:
            DeliveryError subclass for any non-200 response.
        """
        body = {**to_postmark_payload(message), **self.parameters()}
        response = self._post(body)

        if response.status_code != 200:
            try:
                result = response.json()
            except ValueError:
                # Proxies and load balancers answer 5xx with HTML pages.
                logger.warning(
                    "Postmark request failed (HTTP %s) with a non-JSON body",
                    response.status_code,
                )
                raise InvalidRequest(response.text) from None

            error = _classify_error(result)
            logger.warning(
                "Postmark rejected message (HTTP %s): %s",
                response.status_code,
                error,
            )
            raise error

        result = response.json()
        logger.info("Delivered message via Postmark: %s", result.get("MessageID"))
        if self.return_response:
            return result
        return True


def _classify_error(result) -> DeliveryError:
    if not isinstance(result, dict):
        return InvalidRequest(str(result))
    code = result.get("ErrorCode")
    text = result.get("Message")
    if code == _ERROR_CODE_INVALID_API_KEY:
        return InvalidAPIKey(text)
    if code == _ERROR_CODE_INVALID_MESSAGE:
        return _INVALID_MESSAGE_ERRORS.get(text, InvalidMessage)(text)
    return InvalidRequest(text)
