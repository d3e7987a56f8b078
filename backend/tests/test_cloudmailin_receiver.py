"""
Cloudmailin receiver tests.

Coverage:
  - parse_raw / parse_multipart / parse_json
  - transform() dispatch (argument, CLOUDMAILIN_HTTP_POST_FORMAT, default raw)
  - flattening of nested raw MIME
  - reply_plain / X-Mailgun-Spf header injection
  - is_spam / is_valid
"""

import base64
import io
import os
from unittest.mock import patch

import pytest

from mailbridge.errors import InvalidFormat
from mailbridge.services.cloudmailin_receiver import (
    SPF_HEADER,
    HttpPostFormat,
    is_spam,
    is_valid,
    parse_json,
    parse_multipart,
    parse_raw,
    resolve_http_post_format,
    transform,
)


# ---------------------------------------------------------------------------
# Payload builder helpers
# ---------------------------------------------------------------------------

SIMPLE_RAW = (
    "From: James <james@example.com>\n"
    "To: foo+bar@example.com\n"
    "Subject: Test\n"
    "MIME-Version: 1.0\n"
    'Content-Type: multipart/alternative; boundary="alt"\n'
    "\n"
    "--alt\n"
    "Content-Type: text/plain\n"
    "\n"
    "bold text\n"
    "--alt\n"
    "Content-Type: text/html; charset=UTF-8\n"
    "\n"
    "<b>bold text</b>\n"
    "--alt--\n"
)

NESTED_RAW = (
    "From: James <james@example.com>\n"
    "To: foo+bar@example.com\n"
    "Subject: Test\n"
    "Received: by mx1.example.com\n"
    "Received: by mx2.example.com\n"
    "MIME-Version: 1.0\n"
    'Content-Type: multipart/mixed; boundary="outer"\n'
    "\n"
    "This is the outer preamble.\n"
    "--outer\n"
    'Content-Type: multipart/alternative; boundary="inner"\n'
    "\n"
    "This is the inner preamble.\n"
    "--inner\n"
    "Content-Type: text/plain\n"
    "\n"
    "bold text\n"
    "--inner\n"
    "Content-Type: text/html\n"
    "\n"
    "<b>bold text</b>\n"
    "--inner--\n"
    "--outer\n"
    "Content-Type: text/plain\n"
    'Content-Disposition: attachment; filename="foo.txt"\n'
    "\n"
    "Lorem ipsum\n"
    "--outer\n"
    "Content-Type: application/octet-stream\n"
    "Content-Transfer-Encoding: base64\n"
    'Content-Disposition: attachment; filename="bar.bin"\n'
    "\n"
    "aGVsbG8=\n"
    "--outer\n"
    "Content-Type: text/plain\n"
    "\n"
    "Signature block\n"
    "--outer\n"
    "Content-Type: text/html\n"
    "\n"
    "<div>Signature block</div>\n"
    "--outer--\n"
)


def _envelope(spf: str = "pass") -> dict:
    return {
        "to": "foo+bar@example.com",
        "from": "james@example.com",
        "spf": {"result": spf, "domain": "example.com"},
    }


def _make_raw_payload(message: str = SIMPLE_RAW, spf: str = "pass") -> dict:
    return {"message": message, "envelope": _envelope(spf)}


def _make_structured_payload(
    spf: str = "pass",
    attachments=None,
    html: str | None = "<b>bold text</b>",
) -> dict:
    payload = {
        "headers": {
            "From": "James <james@example.com>",
            "To": "foo+bar@example.com",
            "Subject": "Test",
            "Received": ["by mx1.example.com", "by mx2.example.com"],
        },
        "plain": "bold text",
        "reply_plain": "bold text",
        "envelope": _envelope(spf),
    }
    if html is not None:
        payload["html"] = html
    if attachments is not None:
        payload["attachments"] = attachments
    return payload


class _Upload:
    """Minimal stand-in for an uploaded form file (filename + file handle)."""

    def __init__(self, filename: str, content: bytes, content_type: str | None = None):
        self.filename = filename
        self.file = io.BytesIO(content)
        self.content_type = content_type


# ===========================================================================
# resolve_http_post_format
# ===========================================================================

class TestResolveHttpPostFormat:
    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_unset_means_raw(self, value):
        assert resolve_http_post_format(value) is HttpPostFormat.RAW

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("raw", HttpPostFormat.RAW),
            ("multipart", HttpPostFormat.MULTIPART),
            ("JSON", HttpPostFormat.JSON),
            (" json ", HttpPostFormat.JSON),
            (HttpPostFormat.MULTIPART, HttpPostFormat.MULTIPART),
        ],
    )
    def test_known_formats(self, value, expected):
        assert resolve_http_post_format(value) is expected

    def test_unknown_format_raises_invalid_format(self):
        with pytest.raises(InvalidFormat, match="xml") as exc_info:
            resolve_http_post_format("xml")

        assert exc_info.value.selector == "xml"

    def test_invalid_format_is_a_value_error(self):
        with pytest.raises(ValueError):
            resolve_http_post_format("xml")


# ===========================================================================
# parse_raw
# ===========================================================================

class TestParseRaw:
    def test_headers_and_spf(self):
        message = parse_raw(_make_raw_payload())

        assert message["From"] == "James <james@example.com>"
        assert message["Subject"] == "Test"
        assert message[SPF_HEADER] == "pass"

    def test_keeps_tree_structure(self):
        message = parse_raw(_make_raw_payload(NESTED_RAW))

        assert message.has_nested_parts
        assert message.parts[0].content_type == "multipart/alternative"
        assert len(message.parts[0].parts) == 2

    def test_repeated_headers_are_preserved(self):
        message = parse_raw(_make_raw_payload(NESTED_RAW))

        assert message.headers.get_all("Received") == [
            "by mx1.example.com",
            "by mx2.example.com",
        ]

    def test_base64_attachment_is_decoded_to_bytes(self):
        message = parse_raw(_make_raw_payload(NESTED_RAW))
        attachment = message.parts[2]

        assert attachment.filename == "bar.bin"
        assert attachment.is_attachment
        assert attachment.body == b"hello"

    def test_single_part_message(self):
        raw = "From: a@example.com\nSubject: Hi\n\nHello there\n"

        message = parse_raw(_make_raw_payload(raw))

        assert not message.is_multipart
        assert message.body.strip() == "Hello there"

    def test_accepts_bytes(self):
        message = parse_raw(_make_raw_payload(SIMPLE_RAW.encode()))

        assert message["Subject"] == "Test"

    def test_unknown_charset_falls_back_to_utf8(self):
        raw = (
            "From: a@example.com\n"
            "Subject: Odd charset\n"
            'Content-Type: multipart/mixed; boundary="outer"\n'
            "\n"
            "--outer\n"
            'Content-Type: multipart/alternative; boundary="inner"\n'
            "\n"
            "--inner\n"
            "Content-Type: text/plain; charset=x-unknown\n"
            "\n"
            "hello\n"
            "--inner--\n"
            "--outer--\n"
        )

        message = transform(_make_raw_payload(raw), http_post_format="raw")[0]

        assert [part.mime_type for part in message.parts] == ["text/plain"]
        assert message.parts[0].body == "hello"

    def test_unknown_charset_single_part(self):
        raw = (
            "From: a@example.com\n"
            "Content-Type: text/plain; charset=unknown-8bit\n"
            "\n"
            "hello\n"
        )

        message = parse_raw(_make_raw_payload(raw))

        assert message.body.strip() == "hello"

    def test_missing_envelope_skips_spf(self):
        message = parse_raw({"message": SIMPLE_RAW})

        assert SPF_HEADER not in message.headers

    def test_raw_has_no_reply_plain(self):
        message = parse_raw(_make_raw_payload())

        assert "reply_plain" not in message.headers


# ===========================================================================
# parse_multipart / parse_json
# ===========================================================================

class TestParseStructured:
    @pytest.mark.parametrize("parser", [parse_multipart, parse_json])
    def test_text_and_html_parts(self, parser):
        message = parser(_make_structured_payload())

        assert [part.content_type for part in message.parts] == [
            "text/plain",
            "text/html; charset=UTF-8",
        ]
        assert message.text_part.body == "bold text"
        assert message.html_part.body == "<b>bold text</b>"
        assert message.content_type == "multipart/alternative"

    @pytest.mark.parametrize("parser", [parse_multipart, parse_json])
    def test_html_is_optional(self, parser):
        message = parser(_make_structured_payload(html=None))

        assert [part.content_type for part in message.parts] == ["text/plain"]

    @pytest.mark.parametrize("parser", [parse_multipart, parse_json])
    def test_repeated_headers_become_multiple_values(self, parser):
        message = parser(_make_structured_payload())

        assert message.headers.get_all("Received") == [
            "by mx1.example.com",
            "by mx2.example.com",
        ]

    @pytest.mark.parametrize("parser", [parse_multipart, parse_json])
    def test_reply_plain_is_normalized_to_lf(self, parser):
        payload = _make_structured_payload()
        payload["reply_plain"] = "line1\r\nline2"

        message = parser(payload)

        assert message["reply_plain"] == "line1\nline2"

    @pytest.mark.parametrize("parser", [parse_multipart, parse_json])
    def test_spf_result_is_copied(self, parser):
        message = parser(_make_structured_payload(spf="softfail"))

        assert message[SPF_HEADER] == "softfail"

    def test_json_attachment_is_base64_decoded(self):
        payload = _make_structured_payload(
            attachments=[{"filename": "a.txt", "content": "aGVsbG8="}]
        )

        message = parse_json(payload)

        assert len(message.attachments) == 1
        attachment = message.attachments[0]
        assert attachment.filename == "a.txt"
        assert attachment.body == b"hello"
        assert attachment.content_type == "text/plain"
        assert message.content_type == "multipart/mixed"

    def test_json_attachment_uses_file_name_and_content_type(self):
        payload = _make_structured_payload(
            attachments=[
                {
                    "file_name": "report.dat",
                    "content": base64.b64encode(b"\x00\x01").decode(),
                    "content_type": "application/x-report",
                }
            ]
        )

        attachment = parse_json(payload).attachments[0]

        assert attachment.filename == "report.dat"
        assert attachment.content_type == "application/x-report"
        assert attachment.body == b"\x00\x01"

    def test_multipart_attachments_are_read_from_file_handles(self):
        payload = _make_structured_payload(
            attachments={
                "0": _Upload("foo.txt", b"Lorem ipsum"),
                "1": _Upload("bar.pdf", b"%PDF-1.4", "application/pdf"),
            }
        )

        message = parse_multipart(payload)

        assert [part.filename for part in message.attachments] == ["foo.txt", "bar.pdf"]
        assert message.attachments[0].body == b"Lorem ipsum"
        assert message.attachments[0].content_type == "text/plain"
        assert message.attachments[1].content_type == "application/pdf"

    def test_multipart_attachment_mapping_with_tempfile(self):
        payload = _make_structured_payload(
            attachments={"0": {"filename": "x.bin", "tempfile": io.BytesIO(b"abc")}}
        )

        attachment = parse_multipart(payload).attachments[0]

        assert attachment.body == b"abc"
        assert attachment.content_type == "application/octet-stream"

    def test_attachments_come_after_body_parts(self):
        payload = _make_structured_payload(
            attachments=[{"filename": "a.txt", "content": "aGVsbG8="}]
        )

        flags = [part.is_attachment for part in parse_json(payload).parts]

        assert flags == [False, False, True]


# ===========================================================================
# transform
# ===========================================================================

class TestTransform:
    def test_returns_single_message_list(self):
        messages = transform(_make_raw_payload(), http_post_format="raw")

        assert len(messages) == 1

    @pytest.mark.parametrize(
        "http_post_format,payload,expected_headers",
        [
            (
                "raw",
                _make_raw_payload(),
                ["From", "To", "Subject", "MIME-Version", "Content-Type", SPF_HEADER],
            ),
            (
                "multipart",
                _make_structured_payload(),
                ["From", "To", "Subject", "Received", "reply_plain", SPF_HEADER],
            ),
            (
                "json",
                _make_structured_payload(),
                ["From", "To", "Subject", "Received", "reply_plain", SPF_HEADER],
            ),
        ],
    )
    def test_header_set_per_format(self, http_post_format, payload, expected_headers):
        message = transform(payload, http_post_format=http_post_format)[0]

        assert message.headers.keys() == expected_headers
        assert message[SPF_HEADER] == "pass"
        assert message.text_part.body.strip() == "bold text"
        assert message.html_part.body.strip() == "<b>bold text</b>"
        assert message.attachments == []

    def test_raw_nested_message_is_flattened(self):
        message = transform(_make_raw_payload(NESTED_RAW), http_post_format="raw")[0]

        assert not message.has_nested_parts
        assert [part.mime_type for part in message.parts] == [
            "text/plain",
            "text/html",
            "text/plain",
            "application/octet-stream",
        ]
        assert [part.filename for part in message.attachments] == ["foo.txt", "bar.bin"]

        plain, html = message.parts[0], message.parts[1]
        assert plain.body.startswith("bold text")
        assert plain.body.endswith("Signature block")
        assert html.body.startswith("<b>bold text</b>")
        assert html.body.endswith("<div>Signature block</div>")

    def test_nested_preambles_are_discarded(self):
        message = transform(_make_raw_payload(NESTED_RAW), http_post_format="raw")[0]

        for part in message.parts:
            assert "inner preamble" not in str(part.body)
        assert "outer preamble" in message.preamble

    def test_raw_flat_message_is_not_rebuilt(self):
        message = transform(_make_raw_payload(), http_post_format="raw")[0]

        # Parsed parts keep their own MIME headers; merged parts have none.
        assert message.parts[0].headers.get("Content-Type") == "text/plain"

    def test_unset_format_defaults_to_raw(self):
        env = {k: v for k, v in os.environ.items() if k != "CLOUDMAILIN_HTTP_POST_FORMAT"}
        with patch.dict(os.environ, env, clear=True):
            message = transform(_make_raw_payload())[0]

        assert message["Subject"] == "Test"

    def test_env_var_selects_format(self):
        with patch.dict(os.environ, {"CLOUDMAILIN_HTTP_POST_FORMAT": "json"}):
            message = transform(_make_structured_payload())[0]

        assert message["reply_plain"] == "bold text"

    def test_argument_overrides_env_var(self):
        with patch.dict(os.environ, {"CLOUDMAILIN_HTTP_POST_FORMAT": "xml"}):
            message = transform(_make_structured_payload(), http_post_format="multipart")[0]

        assert message["Subject"] == "Test"

    def test_unsupported_format_raises(self):
        with pytest.raises(InvalidFormat, match="xml"):
            transform(_make_raw_payload(), http_post_format="xml")

    def test_json_end_to_end_attachment(self):
        payload = _make_structured_payload(
            attachments=[{"filename": "a.txt", "content": "aGVsbG8="}]
        )

        message = transform(payload, http_post_format="json")[0]

        assert [part.filename for part in message.attachments] == ["a.txt"]
        assert message.attachments[0].decoded() == b"hello"


# ===========================================================================
# is_spam / is_valid
# ===========================================================================

class TestSpam:
    def test_fail_is_spam(self):
        message = transform(_make_raw_payload(spf="fail"), http_post_format="raw")[0]

        assert is_spam(message) is True

    @pytest.mark.parametrize("result", ["pass", "neutral", "softfail", "FAIL"])
    def test_other_results_are_ham(self, result):
        message = transform(_make_structured_payload(spf=result), http_post_format="json")[0]

        assert is_spam(message) is False

    def test_missing_header_is_ham(self):
        message = parse_raw({"message": SIMPLE_RAW})

        assert is_spam(message) is False


def test_every_payload_is_valid():
    assert is_valid({}) is True
    assert is_valid(_make_raw_payload()) is True
