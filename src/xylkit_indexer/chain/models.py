"""Data models for the Movement REST API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

ADDRESS_HEX_LENGTH = 64


def normalize_address(address: str) -> str:
    """Return the long form of an account address (``0x`` + 64 lowercase hex).

    Raises:
        ValueError: If the value is not a hex account address.
    """
    value = address.strip().lower()
    if not value.startswith("0x"):
        raise ValueError(f"Address must start with 0x: {address!r}")
    digits = value[2:]
    if not digits or len(digits) > ADDRESS_HEX_LENGTH:
        raise ValueError(f"Address must have 1-{ADDRESS_HEX_LENGTH} hex digits: {address!r}")
    try:
        int(digits, 16)
    except ValueError as e:
        raise ValueError(f"Address is not hexadecimal: {address!r}") from e
    return "0x" + digits.rjust(ADDRESS_HEX_LENGTH, "0")


def is_address(value: str) -> bool:
    try:
        normalize_address(value)
    except ValueError:
        return False
    return True


def type_tag_address(type_tag: str) -> str | None:
    """Extract the normalized module address of a Move type tag.

    ``0x1c5d...::drips::StreamsSet`` -> ``0x01c5d...``. Returns None when the
    tag does not start with an address.
    """
    head = type_tag.split("::", 1)[0]
    try:
        return normalize_address(head)
    except ValueError:
        return None


def _parse_timestamp(raw: Any) -> datetime:
    # The REST API reports transaction timestamps in microseconds.
    try:
        micros = int(raw)
    except (TypeError, ValueError):
        return datetime.fromtimestamp(0, tz=UTC)
    return datetime.fromtimestamp(micros / 1_000_000, tz=UTC)


@dataclass(frozen=True)
class LedgerInfo:
    """Chain head reported by ``GET /``."""

    chain_id: int
    ledger_version: int
    ledger_timestamp: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerInfo:
        return cls(
            chain_id=int(data.get("chain_id", 0)),
            ledger_version=int(data["ledger_version"]),
            ledger_timestamp=_parse_timestamp(data.get("ledger_timestamp")),
        )


@dataclass(frozen=True)
class ChainEvent:
    """A single event emitted by a transaction."""

    type: str
    data: dict[str, Any]
    sequence_number: int
    index: int

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, index: int) -> ChainEvent:
        payload = data.get("data")
        return cls(
            type=str(data.get("type", "")),
            data=payload if isinstance(payload, dict) else {},
            sequence_number=int(data.get("sequence_number") or 0),
            index=index,
        )

    @property
    def name(self) -> str:
        """Trailing segment of the type tag (the Move struct name)."""
        return self.type.rsplit("::", 1)[-1]


@dataclass(frozen=True)
class Transaction:
    """A committed transaction as returned by the REST API.

    Only user transactions carry a sender, sequence number and entry
    function; block metadata and checkpoint transactions leave them unset.
    """

    version: int
    hash: str
    timestamp: datetime
    type: str = "user_transaction"
    sender: str | None = None
    sequence_number: int | None = None
    entry_function: str | None = None
    events: tuple[ChainEvent, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        payload = data.get("payload") or {}
        function = payload.get("function") if isinstance(payload, dict) else None
        sequence_number = data.get("sequence_number")
        events = tuple(
            ChainEvent.from_dict(event, index=i) for i, event in enumerate(data.get("events") or [])
        )
        sender = data.get("sender")
        return cls(
            version=int(data["version"]),
            hash=str(data.get("hash", "")),
            timestamp=_parse_timestamp(data.get("timestamp")),
            type=str(data.get("type", "")),
            sender=str(sender) if sender else None,
            sequence_number=int(sequence_number) if sequence_number is not None else None,
            entry_function=str(function) if function else None,
            events=events,
        )
