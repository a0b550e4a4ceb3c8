"""Audit event records and their line representation."""

import time
from dataclasses import dataclass, field, replace
from functools import total_ordering
from typing import Any

from . import codec
from .codec import MalformedRecordError


@total_ordering
@dataclass(frozen=True, eq=False)
class Event:
    """One audit record of one log belonging to one node.

    Identity is the triple ``(owner_id, log_id, id)``; two events with the
    same triple are the same record regardless of payload, which is what
    lets a store absorb redelivered events.
    """

    owner_id: str
    log_id: int
    id: int
    timestamp: int
    type: int
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, int, int]:
        return (self.owner_id, self.log_id, self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Event):
            return NotImplemented
        return self.identity == other.identity

    def __lt__(self, other: "Event") -> bool:
        if not isinstance(other, Event):
            return NotImplemented
        return self.identity < other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    def for_owner(self, owner_id: str) -> "Event":
        """Copy of this event stamped with another owner ID."""
        return replace(self, owner_id=owner_id)

    def to_representation(self) -> str:
        fields = [
            codec.encode(self.owner_id),
            str(self.log_id),
            str(self.id),
            str(self.timestamp),
            str(self.type),
        ]
        for key, value in self.properties.items():
            fields.append(codec.encode(key))
            fields.append(codec.encode(value))
        return ",".join(fields)

    @classmethod
    def parse(cls, line: str) -> "Event":
        """Parse one event line.

        Raises:
            MalformedRecordError: On missing or non-numeric header fields, a
                property key without a value, or a bad escape.
        """
        parts = line.rstrip("\r\n").split(",")
        if len(parts) < 5 or (len(parts) - 5) % 2:
            raise MalformedRecordError(f"Could not create event from: {line!r}")
        try:
            owner_id = codec.decode(parts[0])
            log_id, event_id, timestamp, event_type = (
                codec.parse_int(p) for p in parts[1:5]
            )
            properties = {
                codec.decode(parts[i]): codec.decode(parts[i + 1])
                for i in range(5, len(parts), 2)
            }
        except MalformedRecordError as e:
            raise MalformedRecordError(
                f"Could not create event from: {line!r}"
            ) from e
        return cls(owner_id, log_id, event_id, timestamp, event_type, properties)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "owner_id": self.owner_id,
            "log_id": self.log_id,
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "properties": dict(self.properties),
        }


def now_millis() -> int:
    """Current wall clock time in milliseconds, the unit of event timestamps."""
    return int(time.time() * 1000)
