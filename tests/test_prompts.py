"""Tests for prompt templates and opening message assembly."""

from __future__ import annotations

from bookloom.ai import prompts
from bookloom.ai.orchestration.chunking import build_chunks
from bookloom.ai.orchestration.message_builder import MessageBuilder, PlanningSummaryCollector
from bookloom.ai.orchestration.protocol import POLISH, TRANSLATION
from bookloom.ai.orchestration.types import TaskStatus

from helpers import make_units


def test_system_prompt_describes_workflow_per_kind():
    translation = prompts.system_prompt(TRANSLATION, target_language="French")
    polish = prompts.system_prompt(POLISH, target_language="French")

    assert "planning -> working -> review -> end" in translation
    assert "into French" in translation
    assert "Every paragraph of the chunk must be submitted" in translation
    assert "planning -> working -> end" in polish
    assert "into French" not in polish
    assert "Only include paragraphs you actually changed" in polish


def test_system_prompt_lists_tools_and_inherited_context():
    content = prompts.system_prompt(TRANSLATION, tool_names=["get_term", "list_terms"], planning_summary="Mara = Mara")

    assert "get_term, list_terms" in content
    assert "## Context from earlier chunks" in content
    assert content.rstrip().endswith("Mara = Mara")


def test_chunk_prompt_includes_title_and_position():
    content = prompts.chunk_prompt(TRANSLATION, "[0] [ID: p1] Hi\n\n", chunk_number=2, chunk_count=5, title="Rain")

    assert content.startswith("Chunk 2 of 5. Translate the following paragraphs.")
    assert "chapter title" in content
    assert "Rain" in content
    assert content.endswith('Start with status "planning".')


def test_status_line_names_next_statuses():
    assert prompts.status_line(TRANSLATION, TaskStatus.REVIEW) == "[Current status: review; next allowed: end or working]"
    assert prompts.status_line(POLISH, TaskStatus.END) == "[Current status: end; next allowed: none]"


def test_missing_units_prompt_caps_listing():
    unit_ids = [f"p{n}" for n in range(15)]

    content = prompts.missing_units_prompt(unit_ids[1:], unit_ids)

    assert content.startswith("14 paragraph(s) have not been submitted: [1] p1, [2] p2")
    assert "(and 4 more)" in content
    assert "[11] p11" not in content


def test_invalid_transition_prompt_names_expected_status():
    content = prompts.invalid_transition_prompt(TRANSLATION, TaskStatus.WORKING, "end", TaskStatus.REVIEW)

    assert 'Status change "working" -> "end" is not allowed' in content
    assert 'The next status must be "review"' in content


def test_planning_summary_format():
    summary = prompts.format_planning_summary(["  keep names  ", ""], [("list_terms", "[]")])

    assert summary == "Planning decisions:\nkeep names\n\nContext gathered:\n- list_terms: []"


def test_message_builder_opening_messages():
    chunk = build_chunks(make_units(2), 8000)[0]
    builder = MessageBuilder(kind=TRANSLATION, target_language="German", tool_names=("get_term",))

    system, user = builder.opening_messages(chunk, chunk_count=1, planning_summary="Earlier context", title="Rain")

    assert system.role == "system"
    assert "into German" in system.content
    assert "Earlier context" in system.content
    assert user.role == "user"
    assert "[1] [ID: p2] Paragraph 2." in user.content
    assert "Rain" in user.content
    assert user.metadata == {"chunk_index": 0}


def test_planning_summary_collector_keeps_key_lookups_only():
    collector = PlanningSummaryCollector()
    collector.add_response("Names stay untranslated.")

    assert collector.add_tool_result("list_terms", '["Mara"]')
    assert not collector.add_tool_result("get_term", '{"term": "x"}')

    summary = collector.finalize('{"s": "working"}')
    assert "Names stay untranslated." in summary
    assert '- list_terms: ["Mara"]' in summary
    assert "get_term" not in summary
    assert collector.finalize("ignored") is summary


def test_planning_summary_collector_empty():
    assert PlanningSummaryCollector().finalize("") is None
