"""Lowest retained event ID of a log, exchanged after local pruning."""

from dataclasses import dataclass

from . import codec
from .codec import MalformedRecordError


@dataclass(frozen=True)
class LowestID:
    owner_id: str
    log_id: int
    lowest_id: int

    def to_representation(self) -> str:
        return f"{codec.encode(self.owner_id)},{self.log_id},{self.lowest_id}"

    @classmethod
    def parse(cls, line: str) -> "LowestID":
        parts = line.rstrip("\r\n").split(",")
        if len(parts) != 3:
            raise MalformedRecordError(f"Could not create lowest ID from: {line!r}")
        try:
            return cls(
                codec.decode(parts[0]),
                codec.parse_int(parts[1]),
                codec.parse_int(parts[2]),
            )
        except MalformedRecordError as e:
            raise MalformedRecordError(
                f"Could not create lowest ID from: {line!r}"
            ) from e
