"""Extract the status envelope from raw model text.

The envelope is a JSON object carrying a required status, optional unit
results and an optional title. Both the verbose keys and the compact keys
used to save output tokens are accepted::

    {"status": "working", "paragraphs": [{"id": "p1", "text": "..."}], "title": "..."}
    {"s": "working", "p": [{"i": 0, "t": "..."}], "tt": "..."}

Compact ``i`` references are positions in the current chunk's unit-id list.
Parsing never raises: malformed input produces a :class:`ParseFailure`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Sequence, Union

from .types import TaskStatus

__all__ = [
    "UnitText",
    "Envelope",
    "ParseSuccess",
    "ParseFailure",
    "ParseOutcome",
    "parse_envelope",
    "find_first_object",
    "missing_unit_ids",
]

LOGGER = logging.getLogger(__name__)

_STATUS_KEYS = ("s", "status")
_UNITS_KEYS = ("p", "paragraphs")
_TITLE_KEYS = ("tt", "titleTranslation", "title")
_INDEX_KEYS = ("i", "index")
_TEXT_KEYS = ("t", "translation", "text")

_DECODER = json.JSONDecoder()


@dataclass(slots=True, frozen=True)
class UnitText:
    unit_id: str
    text: str


@dataclass(slots=True, frozen=True)
class Envelope:
    """Structured content of one model turn.

    Attributes:
        status: Declared protocol status.
        units: Unit results in the order the model listed them.
        title: Title result, when present.
        dropped: Number of unit entries ignored (unresolvable reference or blank text).
    """

    status: TaskStatus
    units: tuple[UnitText, ...] = ()
    title: str | None = None
    dropped: int = 0

    @property
    def has_content(self) -> bool:
        return bool(self.units) or self.title is not None


@dataclass(slots=True, frozen=True)
class ParseSuccess:
    envelope: Envelope
    ok: Literal[True] = True


@dataclass(slots=True, frozen=True)
class ParseFailure:
    """Parse result for text without a usable envelope.

    Attributes:
        reason: Human-readable explanation, suitable for a corrective prompt.
        raw_status: The offending status value when one was found.
    """

    reason: str
    raw_status: str | None = None
    ok: Literal[False] = False


ParseOutcome = Union[ParseSuccess, ParseFailure]


def find_first_object(text: str) -> dict[str, Any] | None:
    """Return the first well-formed JSON object embedded in ``text``."""

    position = text.find("{")
    while position != -1:
        try:
            value, _ = _DECODER.raw_decode(text, position)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        position = text.find("{", position + 1)
    return None


def parse_envelope(text: str, unit_ids: Sequence[str] = ()) -> ParseOutcome:
    """Parse ``text`` into an :class:`Envelope`.

    Args:
        text: Raw model output, possibly with prose around the JSON object.
        unit_ids: Ordered unit ids of the current chunk, used to resolve
            compact index references.

    Returns:
        :class:`ParseSuccess` or :class:`ParseFailure`.
    """

    if not text or not text.strip():
        return ParseFailure("The response was empty; a JSON object with a status field is required.")

    data = find_first_object(text)
    if data is None:
        return ParseFailure("No JSON object was found in the response.")

    raw_status = _first_present(data, _STATUS_KEYS)
    if not isinstance(raw_status, str) or not raw_status.strip():
        return ParseFailure("The JSON object is missing the status field.")

    status = TaskStatus.parse(raw_status)
    if status is None:
        allowed = ", ".join(TaskStatus.values())
        return ParseFailure(
            f"Invalid status value '{raw_status}'; it must be one of: {allowed}.",
            raw_status=raw_status,
        )

    units, dropped = _parse_units(_first_present(data, _UNITS_KEYS), unit_ids)

    title = _first_present(data, _TITLE_KEYS)
    if not isinstance(title, str) or not title.strip():
        title = None

    if dropped:
        LOGGER.debug("Dropped %d unusable unit entr(ies) from envelope", dropped)
    return ParseSuccess(Envelope(status=status, units=units, title=title, dropped=dropped))


def missing_unit_ids(expected: Iterable[str], results: Mapping[str, str]) -> list[str]:
    """Return ids from ``expected`` without a recorded result, in order."""
    return [unit_id for unit_id in expected if unit_id not in results]


def _first_present(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _parse_units(payload: Any, unit_ids: Sequence[str]) -> tuple[tuple[UnitText, ...], int]:
    if not isinstance(payload, list):
        return (), 0
    units: list[UnitText] = []
    dropped = 0
    for item in payload:
        if not isinstance(item, Mapping):
            dropped += 1
            continue
        unit_id = _resolve_reference(item, unit_ids)
        text = _first_present(item, _TEXT_KEYS)
        if unit_id is None or not isinstance(text, str) or not text.strip():
            dropped += 1
            continue
        units.append(UnitText(unit_id=unit_id, text=text))
    return tuple(units), dropped


def _resolve_reference(item: Mapping[str, Any], unit_ids: Sequence[str]) -> str | None:
    index = _first_present(item, _INDEX_KEYS)
    # bool is an int subclass
    if isinstance(index, int) and not isinstance(index, bool):
        if 0 <= index < len(unit_ids):
            return unit_ids[index]
    explicit = item.get("id")
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()
    return None
