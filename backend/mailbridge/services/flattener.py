"""
Flatten nested multipart bodies into a single level of parts.

A raw MIME message may nest multipart/alternative inside multipart/mixed
inside multipart/related, and so on. Downstream code wants one flat list:

  1. Collect every leaf part, depth-first, in document order.
  2. Merge non-attachment leaves that share a content type (bodies are
     concatenated in order; groups keep first-seen order).
  3. Append attachments, untouched, after the merged parts.

Preambles and epilogues of nested multipart containers are dropped. The
top-level message keeps its own.
"""

import logging
from typing import Dict, List

from mailbridge.models.message import Body, Message, Part

logger = logging.getLogger(__name__)


def collect_leaves(parts: List[Part]) -> List[Part]:
    """Return every non-multipart part under ``parts``, in document order."""
    leaves: List[Part] = []
    for part in parts:
        if part.is_multipart:
            leaves.extend(collect_leaves(part.parts))
        else:
            leaves.append(part)
    return leaves


def _join_bodies(group: List[Part]) -> Body:
    bodies = [part.decoded() for part in group]
    if all(isinstance(body, str) for body in bodies):
        return "".join(bodies)
    return b"".join(
        body.encode(part.charset, errors="replace") if isinstance(body, str) else body
        for part, body in zip(group, bodies)
    )


def content_type_key(content_type: str) -> tuple:
    """
    Grouping key for a Content-Type value.

    Type, subtype and parameter names compare case-insensitively, quoting is
    ignored, and so is the case of the charset value:
      'TEXT/PLAIN; charset=UTF-8' and 'text/plain; charset="utf-8"' match.
    """
    mime_type, *params = content_type.split(";")
    normalized = []
    for param in params:
        name, _, value = param.partition("=")
        name = name.strip().lower()
        if not name:
            continue
        value = value.strip().strip('"')
        if name == "charset":
            value = value.lower()
        normalized.append((name, value))
    return (mime_type.strip().lower(), tuple(sorted(normalized)))


def merge_parts(parts: List[Part]) -> List[Part]:
    """
    Merge non-attachment parts by content type and move attachments last.

    Each content-type group becomes one new Part, even a group of one.
    """
    groups: Dict[tuple, List[Part]] = {}
    attachments: List[Part] = []
    for part in parts:
        if part.is_attachment:
            attachments.append(part)
        else:
            groups.setdefault(content_type_key(part.content_type), []).append(part)

    # The merged part keeps the spelling of the group's first member.
    merged = [
        Part(content_type=group[0].content_type, body=_join_bodies(group))
        for group in groups.values()
    ]
    return merged + attachments


def flatten_message(message: Message) -> Message:
    """
    Flatten ``message`` in place and return it.

    Messages without a nested multipart part are returned unchanged, so
    calling this on an already-flat message is a no-op.
    """
    if not message.has_nested_parts:
        return message

    leaves = collect_leaves(message.parts)
    message.parts = merge_parts(leaves)
    logger.debug(
        "Flattened %d leaf parts into %d parts", len(leaves), len(message.parts)
    )
    return message
