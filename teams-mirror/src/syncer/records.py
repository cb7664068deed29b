"""
Record and page types returned by the Graph list endpoints.

Every entity the syncer touches (team, channel, chat, member, message,
reply) is an :class:`Record`: an ``id`` plus the untouched JSON object the
API sent.  The syncer only ever reads a handful of named fields from the
payload (display names, chat topic, reply timestamps), so those get
accessors and everything else is passed through verbatim to storage.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from syncer.errors import MalformedPayloadError, ProtocolViolationError

_NEXT_LINK = "@odata.nextLink"
_DELTA_LINK = "@odata.deltaLink"
_COUNT = "@odata.count"


class EntityKind(enum.Enum):
    TEAM = "team"
    CHANNEL = "channel"
    CHAT = "chat"
    MEMBER = "member"
    MESSAGE = "message"
    REPLY = "reply"


@dataclass(frozen=True)
class Record:
    """An entity decoded from a Graph collection."""

    kind: EntityKind
    id: str
    payload: Mapping[str, Any] = field(repr=False, compare=False)

    @property
    def display_name(self) -> str:
        return str(self.payload.get("displayName") or "")

    @property
    def topic(self) -> Optional[str]:
        value = self.payload.get("topic")
        return str(value) if value else None

    @property
    def created_date_time(self) -> str:
        # ISO-8601 UTC strings from Graph sort chronologically as text.
        return str(self.payload.get("createdDateTime") or "")

    def to_json(self) -> str:
        return json.dumps(self.payload, ensure_ascii=False)

    def describe(self) -> str:
        """Short human-readable form for log lines."""
        name = self.display_name or self.topic
        if name:
            return f"{self.kind.value} {name!r} (id={self.id})"
        return f"{self.kind.value} id={self.id}"


def decode_record(kind: EntityKind, obj: Any) -> Record:
    """Wrap one JSON object from a page's ``value`` array.

    Raises:
        MalformedPayloadError: If the object is not a dict or has no
            non-empty string ``id``.
    """
    if not isinstance(obj, dict):
        raise MalformedPayloadError(f"{kind.value} is not a JSON object: {obj!r}")
    record_id = obj.get("id")
    if not isinstance(record_id, str) or not record_id:
        raise MalformedPayloadError(f"{kind.value} without id: {obj!r}")
    return Record(kind=kind, id=record_id, payload=obj)


@dataclass(frozen=True)
class Page:
    """One response from a collection endpoint."""

    items: List[Record]
    count: int = 0
    next_link: Optional[str] = None
    delta_link: Optional[str] = None


def decode_page(kind: EntityKind, body: Any) -> Page:
    """Decode a Graph collection response.

    Raises:
        MalformedPayloadError: If the body is not an object, ``value`` is not
            a list, or any item lacks an id.
        ProtocolViolationError: If both ``@odata.nextLink`` and
            ``@odata.deltaLink`` are present.
    """
    if not isinstance(body, dict):
        raise MalformedPayloadError(f"Collection response is not a JSON object: {body!r}")

    values = body.get("value", [])
    if not isinstance(values, list):
        raise MalformedPayloadError(f"Collection 'value' is not a list: {values!r}")

    next_link = body.get(_NEXT_LINK) or None
    delta_link = body.get(_DELTA_LINK) or None
    if next_link and delta_link:
        raise ProtocolViolationError(
            f"Both next link and delta link are present: next={next_link} delta={delta_link}"
        )

    try:
        count = int(body.get(_COUNT, 0) or 0)
    except (TypeError, ValueError):
        count = 0

    return Page(
        items=[decode_record(kind, obj) for obj in values],
        count=count,
        next_link=next_link,
        delta_link=delta_link,
    )


@dataclass
class FetchResult:
    """Everything fetched from one collection in one call."""

    items: Dict[str, Record] = field(default_factory=dict)
    delta_link: Optional[str] = None

    def values(self) -> List[Record]:
        return list(self.items.values())

    def __len__(self) -> int:
        return len(self.items)
