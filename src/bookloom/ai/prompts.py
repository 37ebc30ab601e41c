"""Prompt templates for document tasks.

Every instruction the task loop sends to the model lives here, so the loop
itself only decides *which* instruction applies.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from .orchestration.protocol import TaskKind, allowed_transitions
from .orchestration.types import TaskStatus

MAX_LISTED_IDS = 10
TOOL_CALL_PLACEHOLDER = "(calling tools)"


def system_prompt(
    kind: TaskKind,
    *,
    target_language: str | None = None,
    tool_names: Sequence[str] = (),
    planning_summary: str | None = None,
) -> str:
    """System prompt for one chunk of a ``kind`` task."""

    sections = [
        _role_section(kind, target_language),
        _protocol_section(kind),
        _envelope_section(kind),
    ]
    if tool_names:
        sections.append(_tools_section(tool_names))
    if planning_summary:
        sections.append(_inherited_planning_section(planning_summary))
    return "\n\n".join(sections)


def _role_section(kind: TaskKind, target_language: str | None) -> str:
    target = f" into {target_language}" if target_language and kind.action == "translate" else ""
    return (
        f"You are a careful literary editor. Your job is to {kind.action} the numbered paragraphs "
        f"you are given{target}, keeping meaning, tone and formatting intact."
    )


def _protocol_section(kind: TaskKind) -> str:
    return f"""## Workflow

Every reply declares a status. Allowed order: {workflow_text(kind)}.
- planning: gather context (use tools if needed). Do not submit paragraphs yet.
- working: submit paragraphs. Only a working reply may contain paragraphs or a title.
{_finish_line(kind)}
Staying in the same status is allowed; skipping or going backwards is not."""


def _finish_line(kind: TaskKind) -> str:
    if kind.verification_enabled:
        return (
            "- review: check that every paragraph was submitted; go back to working to fix gaps.\n"
            "- end: the chunk is finished."
        )
    return "- end: the chunk is finished. There is no review step for this task."


def _envelope_section(kind: TaskKind) -> str:
    changed = (
        "\nOnly include paragraphs you actually changed; unchanged paragraphs may be omitted."
        if kind.reports_changed_only
        else "\nEvery paragraph of the chunk must be submitted before finishing."
    )
    return f"""## Reply format

Reply with one JSON object:
{{"s": "<status>", "p": [{{"i": <paragraph index>, "t": "<text>"}}], "tt": "<title>"}}
"s" is required; "p" and "tt" are only allowed when "s" is "working".
"i" is the [index] shown before each paragraph of the current chunk.{changed}"""


def _tools_section(tool_names: Sequence[str]) -> str:
    listed = ", ".join(tool_names)
    return f"## Tools\n\nYou may call these tools while planning or working: {listed}."


def _inherited_planning_section(summary: str) -> str:
    return (
        "## Context from earlier chunks\n\n"
        "Planning for this document was already done. Reuse the context below instead of "
        "looking it up again, keep planning brief and move to working quickly.\n\n"
        f"{summary}"
    )


def workflow_text(kind: TaskKind) -> str:
    if kind.verification_enabled:
        return "planning -> working -> review -> end"
    return "planning -> working -> end"


def chunk_prompt(
    kind: TaskKind,
    chunk_text: str,
    *,
    chunk_number: int,
    chunk_count: int,
    title: str | None = None,
) -> str:
    """First user message of a chunk."""

    lines = [f"Chunk {chunk_number} of {chunk_count}. {kind.action.capitalize()} the following paragraphs."]
    if title:
        lines.append(f"Also {kind.action} the chapter title (submit it as \"tt\"): {title}")
    lines.append("")
    lines.append(chunk_text.rstrip())
    lines.append("")
    lines.append('Start with status "planning".')
    return "\n".join(lines)


def status_line(kind: TaskKind, status: TaskStatus) -> str:
    edges = allowed_transitions(kind).get(status, ())
    following = " or ".join(edge.value for edge in edges) or "none"
    return f"[Current status: {status.value}; next allowed: {following}]"


# -----------------------------------------------------------------------------
# Follow-up instructions
# -----------------------------------------------------------------------------


def planning_prompt(kind: TaskKind, *, brief: bool, force: bool) -> str:
    if force:
        return (
            "You have spent too long planning. Switch to status \"working\" now and submit "
            "paragraphs in the same reply."
        )
    if brief:
        return "Context is already available. Confirm your plan briefly and switch to \"working\"."
    return "Continue planning if you still need context; otherwise switch to \"working\" and start submitting."


def working_stalled_prompt(kind: TaskKind) -> str:
    return (
        f"You declared \"working\" without submitting anything. Submit the {kind.action}d paragraphs "
        "now, in this reply, using the \"p\" field."
    )


def working_finished_prompt(kind: TaskKind) -> str:
    finish = kind.finish_status.value
    if kind.reports_changed_only:
        return f"If every change for this chunk has been submitted, set status to \"{finish}\"; otherwise continue."
    return f"All paragraphs of this chunk have been submitted. Set status to \"{finish}\"."


def working_continue_prompt(kind: TaskKind) -> str:
    return "Continue with the remaining paragraphs of this chunk."


def missing_units_prompt(missing: Sequence[str], unit_ids: Sequence[str]) -> str:
    listed = [_describe_unit(unit_id, unit_ids) for unit_id in missing[:MAX_LISTED_IDS]]
    more = ""
    if len(missing) > MAX_LISTED_IDS:
        more = f" (and {len(missing) - MAX_LISTED_IDS} more)"
    return (
        f"{len(missing)} paragraph(s) have not been submitted: {', '.join(listed)}{more}. "
        "Status is back to \"working\"; submit them now."
    )


def _describe_unit(unit_id: str, unit_ids: Sequence[str]) -> str:
    try:
        return f"[{unit_ids.index(unit_id)}] {unit_id}"
    except ValueError:
        return unit_id


def review_loop_prompt() -> str:
    return (
        "Review has gone on too long. Set status to \"end\" now, or to \"working\" only if a "
        "paragraph still needs to be changed."
    )


def review_prompt() -> str:
    return (
        "Check the submitted paragraphs. If something needs fixing, switch to \"working\" and "
        "resubmit it; otherwise set status to \"end\"."
    )


# -----------------------------------------------------------------------------
# Corrections
# -----------------------------------------------------------------------------


def parse_failure_prompt(reason: str) -> str:
    return (
        f"Your reply could not be read: {reason} Reply with a single JSON object such as "
        '{"s": "working", "p": [{"i": 0, "t": "..."}]}.'
    )


def invalid_transition_prompt(kind: TaskKind, current: TaskStatus, declared: str, expected: TaskStatus) -> str:
    return (
        f"Status change \"{current.value}\" -> \"{declared}\" is not allowed. "
        f"The order is {workflow_text(kind)}. The next status must be \"{expected.value}\"."
    )


def content_status_prompt(declared: str) -> str:
    return (
        f"Paragraphs or a title were submitted with status \"{declared}\". Content is only accepted "
        "with status \"working\"; resend it with \"s\": \"working\"."
    )


def stream_violation_prompt(reason: str) -> str:
    return f"Your reply was stopped early: {reason} Send a corrected reply."


def brief_planning_tool_note(tool_name: str) -> str:
    return (
        f"\n\n[Note: the result of {tool_name} is already included in the inherited context. "
        "Do not repeat context lookups; move on to working.]"
    )


def format_planning_summary(responses: Iterable[str], tool_results: Iterable[tuple[str, str]]) -> str:
    parts: list[str] = []
    decisions = [text.strip() for text in responses if text and text.strip()]
    if decisions:
        parts.append("Planning decisions:")
        parts.extend(decisions)
    lookups = list(tool_results)
    if lookups:
        if parts:
            parts.append("")
        parts.append("Context gathered:")
        parts.extend(f"- {name}: {result}" for name, result in lookups)
    return "\n".join(parts)
