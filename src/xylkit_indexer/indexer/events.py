"""Protocol event classification and payload decoding.

Raw events carry a Move type tag (``<deployment>::drips::StreamsSet``) and
a JSON object of fields. Numbers arrive as decimal strings; fungible asset
handles arrive either as an address or as ``{"inner": <address>}``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from xylkit_indexer.chain.models import normalize_address
from xylkit_indexer.indexer.identity import parse_account_id

logger = logging.getLogger(__name__)


class EventDecodeError(ValueError):
    """Raised when an event lacks a usable primary account id."""


class EventName(str, Enum):
    STREAMS_SET = "StreamsSet"
    SPLITS_SET = "SplitsSet"
    GIVEN = "Given"
    RECEIVED = "Received"
    SQUEEZED = "Squeezed"
    SPLIT_EXECUTED = "SplitExecuted"
    COLLECTED = "Collected"


_NAMES = {name.value: name for name in EventName}


def classify(type_tag: str) -> EventName | None:
    """Map a type tag to a protocol event name; None for anything else."""
    return _NAMES.get(type_tag.rsplit("::", 1)[-1])


def _uint(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def _array(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


def _fa_metadata(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("inner")
    if not isinstance(value, str):
        return ""
    try:
        return normalize_address(value)
    except ValueError:
        return value


def _primary_account_id(name: EventName, data: dict[str, Any]) -> int:
    account_id = parse_account_id(data.get("account_id"))
    if account_id is None:
        raise EventDecodeError(f"{name.value} event has no valid account_id: {data.get('account_id')!r}")
    return account_id


@dataclass(frozen=True)
class StreamReceiver:
    account_id: int
    stream_id: int
    amt_per_sec: int
    start: int
    duration: int


@dataclass(frozen=True)
class SplitReceiver:
    account_id: int
    weight: int


@dataclass(frozen=True)
class StreamsSet:
    """New complete stream configuration of ``account_id``."""

    name: ClassVar[EventName] = EventName.STREAMS_SET

    account_id: int
    fa_metadata: str
    receivers: tuple[StreamReceiver, ...]
    balance: int
    max_end: int


@dataclass(frozen=True)
class SplitsSet:
    """New complete split configuration of ``account_id``."""

    name: ClassVar[EventName] = EventName.SPLITS_SET

    account_id: int
    receivers: tuple[SplitReceiver, ...]


@dataclass(frozen=True)
class Given:
    name: ClassVar[EventName] = EventName.GIVEN

    account_id: int
    receiver_id: int | None
    fa_metadata: str
    amount: int


@dataclass(frozen=True)
class Received:
    name: ClassVar[EventName] = EventName.RECEIVED

    account_id: int
    fa_metadata: str
    amount: int


@dataclass(frozen=True)
class Squeezed:
    name: ClassVar[EventName] = EventName.SQUEEZED

    account_id: int
    sender_id: int | None
    fa_metadata: str
    amount: int


@dataclass(frozen=True)
class SplitExecuted:
    name: ClassVar[EventName] = EventName.SPLIT_EXECUTED

    account_id: int
    fa_metadata: str
    to_receivers: int
    to_self: int


@dataclass(frozen=True)
class Collected:
    name: ClassVar[EventName] = EventName.COLLECTED

    account_id: int
    fa_metadata: str
    amount: int


EventPayload = Union[StreamsSet, SplitsSet, Given, Received, Squeezed, SplitExecuted, Collected]


def _decode_streams_set(data: dict[str, Any]) -> StreamsSet:
    account_id = _primary_account_id(EventName.STREAMS_SET, data)
    stream_ids = _array(data, "receiver_stream_ids")
    amts = _array(data, "receiver_amt_per_secs")
    starts = _array(data, "receiver_starts")
    durations = _array(data, "receiver_durations")

    receivers = []
    for i, raw_receiver in enumerate(_array(data, "receiver_account_ids")):
        receiver_id = parse_account_id(raw_receiver)
        if receiver_id is None:
            logger.warning("Skipping stream receiver with invalid account id %r", raw_receiver)
            continue
        receivers.append(
            StreamReceiver(
                account_id=receiver_id,
                stream_id=_uint(stream_ids[i]) if i < len(stream_ids) else 0,
                amt_per_sec=_uint(amts[i]) if i < len(amts) else 0,
                start=_uint(starts[i]) if i < len(starts) else 0,
                duration=_uint(durations[i]) if i < len(durations) else 0,
            )
        )

    return StreamsSet(
        account_id=account_id,
        fa_metadata=_fa_metadata(data.get("fa_metadata")),
        receivers=tuple(receivers),
        balance=_uint(data.get("balance")),
        max_end=_uint(data.get("max_end")),
    )


def _decode_splits_set(data: dict[str, Any]) -> SplitsSet:
    account_id = _primary_account_id(EventName.SPLITS_SET, data)
    weights = _array(data, "receiver_weights")

    receivers = []
    for i, raw_receiver in enumerate(_array(data, "receiver_account_ids")):
        receiver_id = parse_account_id(raw_receiver)
        if receiver_id is None:
            logger.warning("Skipping split receiver with invalid account id %r", raw_receiver)
            continue
        receivers.append(
            SplitReceiver(account_id=receiver_id, weight=_uint(weights[i]) if i < len(weights) else 0)
        )
    return SplitsSet(account_id=account_id, receivers=tuple(receivers))


def decode(name: EventName, data: dict[str, Any]) -> EventPayload:
    """Project raw event fields onto the typed payload for ``name``.

    Missing arrays decode as empty and missing numbers as zero.

    Raises:
        EventDecodeError: If the primary ``account_id`` is missing or invalid.
    """
    if name is EventName.STREAMS_SET:
        return _decode_streams_set(data)
    if name is EventName.SPLITS_SET:
        return _decode_splits_set(data)

    account_id = _primary_account_id(name, data)
    fa_metadata = _fa_metadata(data.get("fa_metadata"))
    if name is EventName.GIVEN:
        return Given(
            account_id=account_id,
            receiver_id=parse_account_id(data.get("receiver_id")),
            fa_metadata=fa_metadata,
            amount=_uint(data.get("amount")),
        )
    if name is EventName.RECEIVED:
        return Received(account_id=account_id, fa_metadata=fa_metadata, amount=_uint(data.get("amount")))
    if name is EventName.SQUEEZED:
        return Squeezed(
            account_id=account_id,
            sender_id=parse_account_id(data.get("sender_id")),
            fa_metadata=fa_metadata,
            amount=_uint(data.get("amount")),
        )
    if name is EventName.SPLIT_EXECUTED:
        return SplitExecuted(
            account_id=account_id,
            fa_metadata=fa_metadata,
            to_receivers=_uint(data.get("to_receivers")),
            to_self=_uint(data.get("to_self")),
        )
    return Collected(account_id=account_id, fa_metadata=fa_metadata, amount=_uint(data.get("amount")))


def counterpart_account_ids(payload: EventPayload) -> list[int]:
    """Accounts referenced by a payload besides its primary account, in payload order."""
    if isinstance(payload, (StreamsSet, SplitsSet)):
        return [r.account_id for r in payload.receivers]
    if isinstance(payload, Given) and payload.receiver_id is not None:
        return [payload.receiver_id]
    if isinstance(payload, Squeezed) and payload.sender_id is not None:
        return [payload.sender_id]
    return []


def involved_account_ids(payload: EventPayload) -> set[int]:
    """Every account id the payload touches."""
    return {payload.account_id, *counterpart_account_ids(payload)}


def payload_fa_metadata(payload: EventPayload) -> str | None:
    return getattr(payload, "fa_metadata", None) or None


def payload_to_json(payload: EventPayload) -> dict[str, Any]:
    """JSON-safe form of a payload for the event log (integers as decimal strings)."""
    if isinstance(payload, StreamsSet):
        return {
            "account_id": str(payload.account_id),
            "fa_metadata": payload.fa_metadata,
            "receivers": [
                {
                    "account_id": str(r.account_id),
                    "stream_id": str(r.stream_id),
                    "amt_per_sec": str(r.amt_per_sec),
                    "start": str(r.start),
                    "duration": str(r.duration),
                }
                for r in payload.receivers
            ],
            "balance": str(payload.balance),
            "max_end": str(payload.max_end),
        }
    if isinstance(payload, SplitsSet):
        return {
            "account_id": str(payload.account_id),
            "receivers": [
                {"account_id": str(r.account_id), "weight": r.weight} for r in payload.receivers
            ],
        }

    result: dict[str, Any] = {}
    for key, value in vars(payload).items():
        if value is None or isinstance(value, str):
            result[key] = value
        else:
            result[key] = str(value)
    return result
