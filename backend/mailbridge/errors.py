"""
Error types raised by the receiver and sender services.

Inbound: InvalidFormat (misconfigured HTTP POST format).
Outbound: one DeliveryError subclass per class of Postmark API failure. Each
carries the provider's message text as its str().
"""

from typing import Optional


class MailbridgeError(Exception):
    """Base class for every error raised by mailbridge."""


class InvalidFormat(MailbridgeError, ValueError):
    """The configured Cloudmailin HTTP POST format is not supported."""

    def __init__(self, selector: Optional[str]):
        self.selector = selector
        super().__init__(f"Can't handle Cloudmailin {selector} HTTP POST format")


class DeliveryError(MailbridgeError):
    """Outbound delivery was rejected by the provider."""


class InvalidAPIKey(DeliveryError):
    pass


class InvalidHeader(DeliveryError):
    pass


class MissingSender(DeliveryError):
    pass


class MissingRecipients(DeliveryError):
    pass


class MissingBody(DeliveryError):
    pass


class InvalidMessage(DeliveryError):
    """The message was rejected for a reason that is not classified further."""


class InvalidRequest(DeliveryError):
    """Any other failed API call."""
