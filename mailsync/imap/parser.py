"""
IMAP response parsing.

aioimaplib hands back FETCH responses as a flat list mixing text lines
and the raw literals announced by a trailing ``{N}`` marker. This module
regroups those items per message, tokenizes them into nested lists and
turns the interesting items into typed values, including BODYSTRUCTURE
as a ``BodyPart`` tree.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from mailsync.core.errors import PartialItemError

Token = Union[str, bytes, None, list, object]

_OPEN = object()
_CLOSE = object()

_LITERAL_MARKER = re.compile(r"\{(\d+)\}\s*$")
_FETCH_START = re.compile(r"^\s*(?:\*\s+)?(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_TOKEN = re.compile(
    r"""
    (?P<open>\()
    |(?P<close>\))
    |"(?P<quoted>(?:[^"\\]|\\.)*)"
    |(?P<literal>\{\d+\})
    |(?P<atom>[^\s()"\[\]{}]+(?:\[[^\]]*\])?(?:<[\d.]+>)?)
    """,
    re.VERBOSE,
)


@dataclass
class FolderStatus:
    """Result of a STATUS query."""
    messages: int = 0
    uid_next: Optional[int] = None
    uid_validity: Optional[int] = None
    unseen: int = 0


@dataclass
class BodyPart:
    """One node of a message's MIME structure."""
    content_type: str
    params: Dict[str, str] = field(default_factory=dict)
    disposition: Optional[str] = None
    disposition_params: Dict[str, str] = field(default_factory=dict)
    content_id: Optional[str] = None
    encoding: Optional[str] = None
    size: int = 0
    children: List["BodyPart"] = field(default_factory=list)

    @property
    def is_multipart(self) -> bool:
        return self.content_type.startswith("multipart/")

    @property
    def filename(self) -> Optional[str]:
        return self.disposition_params.get("filename") or self.params.get("name")

    @property
    def is_attachment(self) -> bool:
        return (self.disposition or "").lower() == "attachment"


def has_attachments(part: Optional[BodyPart]) -> bool:
    """True when any node of the tree carries an attachment disposition."""
    if part is None:
        return False
    if part.is_attachment:
        return True
    return any(has_attachments(child) for child in part.children)


@dataclass
class FetchedMessage:
    """Header-level data for one message from a UID FETCH."""
    uid: int
    flags: List[str] = field(default_factory=list)
    size: int = 0
    internal_date: Optional[str] = None
    headers: bytes = b""
    structure: Optional[BodyPart] = None
    raw: Optional[bytes] = None


def _to_text(item: Any) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


def group_fetch_items(lines: Iterable[Any]) -> List[List[Union[str, bytes]]]:
    """
    Split aioimaplib response lines into one chunk list per FETCH response.

    Text chunks are str; a literal announced by the preceding chunk's
    ``{N}`` marker is kept as bytes. Trailing status lines ("Fetch
    completed") that do not start a FETCH response are attached to the
    previous group and ignored by the tokenizer.
    """
    groups: List[List[Union[str, bytes]]] = []
    current: Optional[List[Union[str, bytes]]] = None
    expect_literal = False

    for item in lines:
        if expect_literal:
            literal = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode("utf-8")
            if current is not None:
                current.append(literal)
            expect_literal = False
            continue

        text = _to_text(item)
        if _FETCH_START.match(text):
            current = [text]
            groups.append(current)
        elif current is not None:
            current.append(text)
        expect_literal = bool(_LITERAL_MARKER.search(text))

    return groups


def tokenize(chunks: Iterable[Union[str, bytes]]) -> List[Token]:
    """Flatten text and literal chunks into a token stream."""
    tokens: List[Token] = []
    for chunk in chunks:
        if isinstance(chunk, bytes):
            tokens.append(chunk)
            continue
        for match in _TOKEN.finditer(chunk):
            kind = match.lastgroup
            if kind == "open":
                tokens.append(_OPEN)
            elif kind == "close":
                tokens.append(_CLOSE)
            elif kind == "quoted":
                tokens.append(re.sub(r"\\(.)", r"\1", match.group("quoted")))
            elif kind == "atom":
                atom = match.group("atom")
                tokens.append(None if atom.upper() == "NIL" else atom)
    return tokens


def _build(tokens: List[Token], pos: int) -> tuple:
    items: List[Token] = []
    while pos < len(tokens):
        token = tokens[pos]
        if token is _OPEN:
            nested, pos = _build(tokens, pos + 1)
            items.append(nested)
            continue
        if token is _CLOSE:
            return items, pos + 1
        items.append(token)
        pos += 1
    return items, pos


def parse_sexpr(tokens: List[Token]) -> list:
    """Build nested lists from a token stream."""
    items, _ = _build(tokens, 0)
    return items


def _params(value: Any) -> Dict[str, str]:
    if not isinstance(value, list):
        return {}
    result = {}
    for i in range(0, len(value) - 1, 2):
        key, val = value[i], value[i + 1]
        if isinstance(key, str) and val is not None:
            result[key.lower()] = _to_text(val)
    return result


def _disposition(value: Any) -> tuple:
    if isinstance(value, list) and value and isinstance(value[0], str):
        return value[0].lower(), _params(value[1] if len(value) > 1 else None)
    return None, {}


def parse_bodystructure(node: Any) -> Optional[BodyPart]:
    """Turn a parsed BODYSTRUCTURE list into a BodyPart tree."""
    if not isinstance(node, list) or not node:
        return None

    if isinstance(node[0], list):
        children = []
        index = 0
        while index < len(node) and isinstance(node[index], list):
            child = parse_bodystructure(node[index])
            if child is not None:
                children.append(child)
            index += 1
        subtype = _to_text(node[index]).lower() if index < len(node) and node[index] else "mixed"
        params = _params(node[index + 1]) if index + 1 < len(node) else {}
        disposition, disposition_params = _disposition(node[index + 2] if index + 2 < len(node) else None)
        return BodyPart(
            content_type=f"multipart/{subtype}",
            params=params,
            disposition=disposition,
            disposition_params=disposition_params,
            children=children,
        )

    if len(node) < 7:
        return None

    main_type = _to_text(node[0]).lower() if node[0] else "application"
    subtype = _to_text(node[1]).lower() if node[1] else "octet-stream"
    try:
        size = int(node[6]) if node[6] is not None else 0
    except (TypeError, ValueError):
        size = 0

    children: List[BodyPart] = []
    if main_type == "text":
        extension_at = 8
    elif main_type == "message" and subtype == "rfc822" and len(node) >= 10:
        nested = parse_bodystructure(node[8])
        if nested is not None:
            children.append(nested)
        extension_at = 10
    else:
        extension_at = 7

    disposition_index = extension_at + 1
    disposition, disposition_params = _disposition(
        node[disposition_index] if disposition_index < len(node) else None
    )
    content_id = _to_text(node[3]) if node[3] is not None else None

    return BodyPart(
        content_type=f"{main_type}/{subtype}",
        params=_params(node[2]),
        disposition=disposition,
        disposition_params=disposition_params,
        content_id=content_id,
        encoding=_to_text(node[5]).lower() if node[5] else None,
        size=size,
        children=children,
    )


def _message_from_items(items: list) -> FetchedMessage:
    data: Dict[str, Any] = {}
    for i in range(0, len(items) - 1, 2):
        key = items[i]
        if isinstance(key, str):
            data[key.upper()] = items[i + 1]

    if "UID" not in data:
        raise PartialItemError("FETCH response without UID")
    try:
        uid = int(data["UID"])
    except (TypeError, ValueError):
        raise PartialItemError(f"Invalid UID in FETCH response: {data['UID']!r}")

    flags = data.get("FLAGS") or []
    message = FetchedMessage(
        uid=uid,
        flags=[_to_text(f) for f in flags if f is not None] if isinstance(flags, list) else [],
        size=int(data.get("RFC822.SIZE") or 0),
        internal_date=_to_text(data["INTERNALDATE"]) if data.get("INTERNALDATE") else None,
        structure=parse_bodystructure(data.get("BODYSTRUCTURE")),
    )

    for key, value in data.items():
        if not key.startswith("BODY[") and key not in ("RFC822", "RFC822.HEADER"):
            continue
        payload = value if isinstance(value, bytes) else (_to_text(value).encode("utf-8") if value else b"")
        if key in ("BODY[]", "RFC822"):
            message.raw = payload
        else:
            message.headers = payload
    return message


def parse_fetch_response(lines: Iterable[Any]) -> tuple:
    """
    Parse UID FETCH output.

    Returns (messages, failures) where failures holds a PartialItemError
    per response that could not be understood.
    """
    messages: List[FetchedMessage] = []
    failures: List[PartialItemError] = []
    for group in group_fetch_items(lines):
        parsed = parse_sexpr(tokenize(group))
        # parsed = [seq, "FETCH", [items...], trailing status words...]
        items = next((p for p in parsed if isinstance(p, list)), None)
        if items is None:
            failures.append(PartialItemError(f"Malformed FETCH response: {_to_text(group[0])[:80]}"))
            continue
        try:
            messages.append(_message_from_items(items))
        except PartialItemError as e:
            failures.append(e)
    return messages, failures


def parse_status_response(lines: Iterable[Any]) -> FolderStatus:
    """Parse the attribute list of a STATUS response."""
    status = FolderStatus()
    for line in lines:
        match = re.search(r"\(([^()]*)\)\s*$", _to_text(line))
        if not match:
            continue
        items = match.group(1).split()
        values = {}
        for i in range(0, len(items) - 1, 2):
            try:
                values[items[i].upper()] = int(items[i + 1])
            except ValueError:
                continue
        if not values:
            continue
        status.messages = values.get("MESSAGES", status.messages)
        status.uid_next = values.get("UIDNEXT", status.uid_next)
        status.uid_validity = values.get("UIDVALIDITY", status.uid_validity)
        status.unseen = values.get("UNSEEN", status.unseen)
    return status


def parse_search_response(lines: Iterable[Any]) -> List[int]:
    """Collect UIDs from a (UID) SEARCH response, ascending."""
    uids = set()
    for line in lines:
        text = _to_text(line).strip()
        if text.upper().startswith("SEARCH"):
            text = text[6:]
        parts = text.split()
        if not parts or not all(p.isdigit() for p in parts):
            continue
        uids.update(int(p) for p in parts)
    return sorted(uids)


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
