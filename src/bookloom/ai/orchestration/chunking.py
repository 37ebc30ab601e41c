"""Split ordered document units into size-bounded chunks."""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Sequence

from .types import Chunk, Unit

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "UnitFormatter",
    "UnitFilter",
    "format_unit",
    "has_text",
    "has_meaningful_text",
    "build_chunks",
    "remaining_units",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 8000

# (unit, 0-based index inside the chunk) -> formatted text
UnitFormatter = Callable[[Unit, int], str]
UnitFilter = Callable[[Unit], bool]

_SYMBOL_ONLY = re.compile(r"^[\W_]+$", re.UNICODE)


def format_unit(unit: Unit, index: int) -> str:
    """Default formatter: ``[index] [ID: id] text`` followed by a blank line."""
    return f"[{index}] [ID: {unit.id}] {unit.text}\n\n"


def has_text(unit: Unit) -> bool:
    return bool(unit.text and unit.text.strip())


def has_meaningful_text(unit: Unit) -> bool:
    """Reject blank units and units made only of punctuation or symbols."""
    if not has_text(unit):
        return False
    return _SYMBOL_ONLY.match("".join(unit.text.split())) is None


def build_chunks(
    units: Iterable[Unit],
    budget: int = DEFAULT_CHUNK_SIZE,
    *,
    formatter: UnitFormatter = format_unit,
    include: UnitFilter = has_text,
    start_index: int = 0,
) -> list[Chunk]:
    """Greedily group ``units`` into chunks whose formatted text fits ``budget``.

    A unit is never split: a unit that alone exceeds the budget becomes its
    own chunk. Units rejected by ``include`` never appear in any chunk.

    Args:
        units: Units in document order.
        budget: Maximum formatted length of a chunk, in characters.
        formatter: Renders a unit given its position inside the chunk.
        include: Inclusion predicate; defaults to dropping blank units.
        start_index: Index assigned to the first chunk.

    Returns:
        Chunks in document order.
    """

    if budget <= 0:
        raise ValueError("Chunk budget must be positive")

    chunks: list[Chunk] = []
    current_units: list[Unit] = []
    current_parts: list[str] = []
    current_length = 0

    def _close() -> None:
        nonlocal current_units, current_parts, current_length
        chunks.append(
            Chunk(
                index=start_index + len(chunks),
                units=tuple(current_units),
                text="".join(current_parts),
            )
        )
        current_units = []
        current_parts = []
        current_length = 0

    skipped = 0
    for unit in units:
        if not include(unit):
            skipped += 1
            continue
        formatted = formatter(unit, len(current_units))
        if current_units and current_length + len(formatted) > budget:
            _close()
            formatted = formatter(unit, 0)
        current_units.append(unit)
        current_parts.append(formatted)
        current_length += len(formatted)

    if current_units:
        _close()

    LOGGER.debug(
        "Built %d chunk(s) with budget %d (%d unit(s) filtered out)",
        len(chunks),
        budget,
        skipped,
    )
    return chunks


def remaining_units(units: Sequence[Unit], processed: Iterable[str]) -> list[Unit]:
    """Return the units of ``units`` whose id is not in ``processed``."""
    done = set(processed)
    return [unit for unit in units if unit.id not in done]
