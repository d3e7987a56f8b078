#!/usr/bin/env python3
"""
Dev helper: send a test Cloudmailin webhook to the local Mailbridge backend.

Builds a payload in one of the three Cloudmailin HTTP POST formats,
optionally attaches a real file (or a generated text file), and POST-s it to
the /api/cloudmailin/inbound endpoint.

The backend decides which parser runs from CLOUDMAILIN_HTTP_POST_FORMAT, so
start it with the same format you send here.

Usage
-----
# Basic — JSON payload with a generated attachment, targeting localhost:8000
python scripts/send_test_webhook.py

# Multipart form upload of a specific file
python scripts/send_test_webhook.py --format multipart --file path/to/report.pdf

# Raw MIME document, flagged as SPF failure (spam)
python scripts/send_test_webhook.py --format raw --spf fail

# Print the payload without sending it
python scripts/send_test_webhook.py --dry-run
"""

import argparse
import base64
import json
import sys
import textwrap
from email.message import EmailMessage
from pathlib import Path

import httpx


# ---------------------------------------------------------------------------
# Sample attachment
# ---------------------------------------------------------------------------

def _make_sample_attachment() -> bytes:
    return b"Lorem ipsum dolor sit amet, consectetur adipiscing elit.\n"


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _headers(from_email: str, to_address: str, subject: str) -> dict:
    return {
        "From": from_email,
        "To": to_address,
        "Subject": subject,
        "Received": [
            "by mx1.cloudmailin.net; Mon, 14 Apr 2025 20:55:30 -0400",
            "by mail.example.com; Mon, 14 Apr 2025 20:55:29 -0400",
        ],
    }


def _envelope(to_address: str, spf: str) -> dict:
    return {"to": to_address, "spf": {"result": spf}}


def _build_json_payload(args, file_content: bytes, filename: str) -> dict:
    """
    Cloudmailin JSON format:
      headers, plain, html, reply_plain, envelope,
      attachments[] — {file_name, content (base64), content_type}
    """
    return {
        "headers": _headers(args.from_email, args.to, args.subject),
        "plain": args.body,
        "html": f"<p>{args.body}</p>",
        "reply_plain": args.body,
        "envelope": _envelope(args.to, args.spf),
        "attachments": [
            {
                "file_name": filename,
                "content": base64.b64encode(file_content).decode(),
                "content_type": "application/octet-stream",
            }
        ],
    }


def _build_raw_payload(args, file_content: bytes, filename: str) -> dict:
    """Cloudmailin raw format: message (RFC 5322 document), envelope."""
    mime = EmailMessage()
    for name, value in _headers(args.from_email, args.to, args.subject).items():
        for item in value if isinstance(value, list) else [value]:
            mime[name] = item
    mime.set_content(args.body)
    mime.add_alternative(f"<p>{args.body}</p>", subtype="html")
    mime.add_attachment(
        file_content, maintype="application", subtype="octet-stream", filename=filename
    )
    return {"message": mime.as_string(), "envelope": _envelope(args.to, args.spf)}


def _build_multipart_form(args, file_content: bytes, filename: str):
    """
    Cloudmailin multipart format: bracketed form fields plus uploaded files.

    Returns (data, files) for httpx.
    """
    data = {
        "plain": args.body,
        "html": f"<p>{args.body}</p>",
        "reply_plain": args.body.replace("\n", "\r\n"),
        "envelope[to]": args.to,
        "envelope[spf][result]": args.spf,
    }
    # List values are sent as repeated fields.
    for name, value in _headers(args.from_email, args.to, args.subject).items():
        data[f"headers[{name}]"] = value
    files = {"attachments[0]": (filename, file_content, "application/octet-stream")}
    return data, files


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        body = response.json()
        print(json.dumps(body, indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    parser = argparse.ArgumentParser(
        prog="send_test_webhook.py",
        description="Send a test Cloudmailin webhook to the Mailbridge backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_webhook.py
              python scripts/send_test_webhook.py --format raw
              python scripts/send_test_webhook.py --format multipart --file q1.pdf
              python scripts/send_test_webhook.py --spf fail
        """),
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--format", default="json", choices=["json", "raw", "multipart"],
                        help="Cloudmailin HTTP POST format (default: json)")
    parser.add_argument("--file", default=None, metavar="PATH",
                        help="Path to a file to attach. A sample text file is used if omitted.")
    parser.add_argument("--from", dest="from_email", default="sender@example.com")
    parser.add_argument("--to", default="inbox@example.cloudmailin.net")
    parser.add_argument("--subject", default="Test message")
    parser.add_argument("--body", default="Hello from send_test_webhook.py")
    parser.add_argument("--spf", default="pass",
                        help='SPF result to report in the envelope (default: "pass")')
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the payload without sending it.")
    args = parser.parse_args()

    if args.file:
        file_path = Path(args.file)
        if not file_path.exists():
            print(f"ERROR: File not found: {file_path}", file=sys.stderr)
            return 1
        file_content = file_path.read_bytes()
        filename = file_path.name
    else:
        file_content = _make_sample_attachment()
        filename = "sample.txt"

    endpoint = f"{args.url.rstrip('/')}/api/cloudmailin/inbound"
    print(f"Format    : {args.format}")
    print(f"Endpoint  : {endpoint}")
    print(f"Attachment: {filename} ({len(file_content):,} bytes)")

    if args.format == "multipart":
        data, files = _build_multipart_form(args, file_content, filename)
        if args.dry_run:
            print("\n[DRY RUN] Form fields:")
            for key, value in data.items():
                print(f"  {key} = {value!r}")
            print(f"  attachments[0] = <file {filename}>")
            return 0
        request_kwargs = {"data": data, "files": files}
    else:
        builder = _build_json_payload if args.format == "json" else _build_raw_payload
        payload = builder(args, file_content, filename)
        if args.dry_run:
            print("\n[DRY RUN] Payload:")
            print(json.dumps(payload, indent=2))
            return 0
        request_kwargs = {"json": payload}

    try:
        response = httpx.post(endpoint, timeout=30, **request_kwargs)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            f"  CLOUDMAILIN_HTTP_POST_FORMAT={args.format} "
            "uvicorn mailbridge.main:app --app-dir backend --reload",
            file=sys.stderr,
        )
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
