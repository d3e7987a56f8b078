"""
Runtime configuration.

Values come from environment variables (optionally loaded from a .env file).
They are read at call time rather than import time so tests can patch
os.environ.
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_POSTMARK_API_URL = "https://api.postmarkapp.com/email"
DEFAULT_POSTMARK_TIMEOUT = 10.0


def get_http_post_format() -> Optional[str]:
    """Cloudmailin HTTP POST format: "raw", "multipart" or "json" (unset = raw)."""
    return os.getenv("CLOUDMAILIN_HTTP_POST_FORMAT")


def get_postmark_api_key() -> Optional[str]:
    return os.getenv("POSTMARK_API_KEY") or None


def get_postmark_api_url() -> str:
    return os.getenv("POSTMARK_API_URL") or DEFAULT_POSTMARK_API_URL


def get_postmark_timeout() -> float:
    raw = os.getenv("POSTMARK_TIMEOUT", "").strip()
    if not raw:
        return DEFAULT_POSTMARK_TIMEOUT
    return float(raw)
