"""Tests for the chunk builder."""

from __future__ import annotations

import pytest

from bookloom.ai.orchestration.chunking import (
    build_chunks,
    format_unit,
    has_meaningful_text,
    has_text,
    remaining_units,
)
from bookloom.ai.orchestration.types import Unit


def _units(*texts: str) -> list[Unit]:
    return [Unit(id=f"u{n}", text=text) for n, text in enumerate(texts, start=1)]


# =============================================================================
# Packing
# =============================================================================


class TestBuildChunks:
    def test_small_document_is_one_chunk(self, three_units) -> None:
        chunks = build_chunks(three_units, 8000)

        assert len(chunks) == 1
        assert chunks[0].unit_ids == ("p1", "p2", "p3")
        assert chunks[0].index == 0
        assert "[0] [ID: p1]" in chunks[0].text
        assert "[2] [ID: p3]" in chunks[0].text

    def test_every_chunk_respects_budget(self) -> None:
        units = _units(*("x" * size for size in (30, 45, 10, 60, 25, 5, 50)))
        budget = 80

        chunks = build_chunks(units, budget)

        for chunk in chunks:
            assert len(chunk.text) <= budget or len(chunk.units) == 1
        flattened = [unit_id for chunk in chunks for unit_id in chunk.unit_ids]
        assert flattened == [unit.id for unit in units]

    def test_oversized_unit_becomes_its_own_chunk(self) -> None:
        units = _units("short", "y" * 500, "also short")

        chunks = build_chunks(units, 100)

        assert [chunk.unit_ids for chunk in chunks] == [("u1",), ("u2",), ("u3",)]
        assert len(chunks[1].text) > 100

    def test_chunk_text_restarts_numbering(self) -> None:
        units = _units("a" * 40, "b" * 40, "c" * 40)

        chunks = build_chunks(units, 70)

        assert len(chunks) == 3
        for chunk in chunks:
            assert chunk.text.startswith("[0] ")
        assert [chunk.index for chunk in chunks] == [0, 1, 2]

    def test_blank_units_are_filtered_out(self) -> None:
        units = _units("first", "   ", "", "last")

        chunks = build_chunks(units, 1000)

        assert chunks[0].unit_ids == ("u1", "u4")

    def test_custom_filter_drops_symbol_only_units(self) -> None:
        units = _units("Real text.", "* * *", "---", "More text.")

        chunks = build_chunks(units, 1000, include=has_meaningful_text)

        assert chunks[0].unit_ids == ("u1", "u4")

    def test_start_index_offsets_chunk_indices(self) -> None:
        chunks = build_chunks(_units("a", "b"), 1000, start_index=4)

        assert chunks[0].index == 4

    def test_empty_input_yields_no_chunks(self) -> None:
        assert build_chunks([], 100) == []

    def test_rejects_non_positive_budget(self) -> None:
        with pytest.raises(ValueError):
            build_chunks(_units("a"), 0)

    def test_chunk_source_text_joins_unit_text(self, three_units) -> None:
        chunk = build_chunks(three_units, 8000)[0]

        assert chunk.source_text == "\n".join(unit.text for unit in three_units)
        assert len(chunk) == 3


# =============================================================================
# Formatters and Filters
# =============================================================================


class TestFormatters:
    def test_format_unit(self) -> None:
        assert format_unit(Unit(id="p7", text="Hello"), 3) == "[3] [ID: p7] Hello\n\n"

    def test_has_text(self) -> None:
        assert has_text(Unit(id="a", text=" x "))
        assert not has_text(Unit(id="a", text=" \n\t"))

    def test_has_meaningful_text(self) -> None:
        assert has_meaningful_text(Unit(id="a", text="Hi."))
        assert not has_meaningful_text(Unit(id="a", text="…  —  ***"))
        assert not has_meaningful_text(Unit(id="a", text=""))

    def test_remaining_units(self, three_units) -> None:
        remaining = remaining_units(three_units, {"p2"})

        assert [unit.id for unit in remaining] == ["p1", "p3"]
