"""
Canonical inbound message model.

Every provider wire format (raw MIME, multipart form, JSON) is parsed into
these models before anything else looks at the email. A Message owns an
ordered tree of Parts; after flattening the tree is exactly one level deep.

Headers are an explicit ordered multimap rather than a dict so that repeated
fields (Received, DKIM-Signature, ...) are never silently overwritten.
"""

from typing import Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

Body = Union[str, bytes]


def normalize_newlines(value: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return value.replace("\r\n", "\n").replace("\r", "\n")


class Headers(BaseModel):
    """
    Ordered multimap of header name -> value.

    Lookups are case-insensitive; insertion order (and the original spelling
    of each name) is preserved.
    """

    pairs: List[Tuple[str, str]] = Field(default_factory=list)

    @classmethod
    def from_mapping(cls, mapping: Optional[dict]) -> "Headers":
        """Build headers from a mapping whose values may be lists of repeats."""
        headers = cls()
        for name, value in (mapping or {}).items():
            if isinstance(value, (list, tuple)):
                for item in value:
                    headers.add(name, item)
            else:
                headers.add(name, value)
        return headers

    def add(self, name: str, value) -> None:
        self.pairs.append((name, normalize_newlines(str(value))))

    def set(self, name: str, value) -> None:
        """Replace every value of ``name`` with a single value."""
        self.remove(name)
        self.add(name, value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        key = name.lower()
        for existing, value in self.pairs:
            if existing.lower() == key:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        key = name.lower()
        return [value for existing, value in self.pairs if existing.lower() == key]

    def remove(self, name: str) -> None:
        key = name.lower()
        self.pairs = [(n, v) for n, v in self.pairs if n.lower() != key]

    def keys(self) -> List[str]:
        """Distinct header names, in first-seen order."""
        seen: set = set()
        names: List[str] = []
        for name, _ in self.pairs:
            if name.lower() not in seen:
                seen.add(name.lower())
                names.append(name)
        return names

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self.pairs))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self.pairs)


class Part(BaseModel):
    """
    One node of a MIME body tree.

    Leaf parts carry ``body``; container parts (before flattening) carry
    ``parts`` instead.
    """

    content_type: str = "text/plain"
    body: Body = ""
    filename: Optional[str] = None
    disposition: Optional[str] = None
    headers: Headers = Field(default_factory=Headers)
    parts: List["Part"] = Field(default_factory=list)
    preamble: Optional[str] = None
    epilogue: Optional[str] = None

    @property
    def mime_type(self) -> str:
        """Content type without parameters, lower-cased."""
        return self.content_type.split(";", 1)[0].strip().lower()

    @property
    def charset(self) -> str:
        for param in self.content_type.split(";")[1:]:
            key, _, value = param.partition("=")
            if key.strip().lower() == "charset" and value.strip():
                return value.strip().strip('"')
        return "utf-8"

    @property
    def is_multipart(self) -> bool:
        return bool(self.parts) or self.mime_type.startswith("multipart/")

    @property
    def is_attachment(self) -> bool:
        # A filename alone is enough; "inline" images with a name count too.
        return self.filename is not None or (self.disposition or "").lower() == "attachment"

    def decoded(self) -> Body:
        return self.body


class Message(BaseModel):
    """
    Top-level canonical email.

    ``message["X-Header"]`` reads the first value of a header and
    ``message["X-Header"] = value`` replaces it, mirroring the header API of
    most mail libraries.
    """

    headers: Headers = Field(default_factory=Headers)
    content_type: str = "text/plain"
    body: Body = ""
    parts: List[Part] = Field(default_factory=list)
    preamble: Optional[str] = None
    epilogue: Optional[str] = None

    @property
    def is_multipart(self) -> bool:
        return bool(self.parts) or self.content_type.lower().startswith("multipart/")

    @property
    def has_nested_parts(self) -> bool:
        return self.is_multipart and any(part.is_multipart for part in self.parts)

    @property
    def attachments(self) -> List[Part]:
        return [part for part in self.parts if part.is_attachment]

    @property
    def text_part(self) -> Optional[Part]:
        return self._find_body_part("text/plain")

    @property
    def html_part(self) -> Optional[Part]:
        return self._find_body_part("text/html")

    def _find_body_part(self, mime_type: str) -> Optional[Part]:
        for part in self.parts:
            if part.mime_type == mime_type and not part.is_attachment:
                return part
        return None

    def __getitem__(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    def __setitem__(self, name: str, value) -> None:
        self.headers.set(name, value)
