"""Detection of runaway repetition in generated text.

Degenerating models tend to emit the same character, or the same short
pattern, over and over. The guard inspects the tail of the generated text
and ignores repetition the source text itself contains, so legitimate
ellipses or onomatopoeia are not mistaken for degradation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import DegradationDetected

__all__ = ["DegradationConfig", "DegradationReport", "DegradationGuard"]

LOGGER = logging.getLogger(__name__)

_MIN_PATTERN_LENGTH = 2
_MAX_PATTERN_LENGTH = 5
_SOURCE_RUN_RATIO = 0.5
_SOURCE_PATTERN_RATIO = 0.75


@dataclass(slots=True, frozen=True)
class DegradationConfig:
    """Thresholds for the degradation guard.

    Attributes:
        repeat_threshold: Run length of one character that counts as degradation.
        check_window: Number of trailing characters inspected.
        pattern_repeat_threshold: Repetitions of a 2-5 character pattern that
            count as degradation.
    """

    repeat_threshold: int = 80
    check_window: int = 100
    pattern_repeat_threshold: int = 30


@dataclass(slots=True, frozen=True)
class DegradationReport:
    pattern: str
    repeat_count: int

    def describe(self) -> str:
        if len(self.pattern) == 1:
            return f"character {self.pattern!r} repeated {self.repeat_count} times"
        return f"pattern {self.pattern!r} repeated {self.repeat_count} times"


class DegradationGuard:
    """Checks generated text against its source for pathological repetition."""

    def __init__(self, config: DegradationConfig | None = None) -> None:
        self._config = config or DegradationConfig()
        self._pattern_cache: dict[str, int] = {}

    @property
    def config(self) -> DegradationConfig:
        return self._config

    def inspect(self, text: str, source: str = "") -> DegradationReport | None:
        """Return a report when the tail of ``text`` has degenerated."""

        config = self._config
        if not text or len(text) < config.check_window:
            return None
        recent = text[-config.check_window :]

        report = self._check_character_runs(recent, source)
        if report is None:
            report = self._check_patterns(recent, source)
        if report is not None:
            LOGGER.warning(
                "Degradation detected in the last %d characters: %s",
                config.check_window,
                report.describe(),
            )
        return report

    def ensure_clean(
        self,
        text: str,
        source: str = "",
        *,
        chunk_index: int | None = None,
        last_status: str | None = None,
    ) -> None:
        """Raise :class:`DegradationDetected` when ``text`` has degenerated."""

        report = self.inspect(text, source)
        if report is None:
            return
        raise DegradationDetected(
            f"Generated text degenerated: {report.describe()}",
            chunk_index=chunk_index,
            last_status=last_status,
            pattern=report.pattern,
            repeat_count=report.repeat_count,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_character_runs(self, recent: str, source: str) -> DegradationReport | None:
        threshold = self._config.repeat_threshold
        position = 0
        while position < len(recent):
            char = recent[position]
            end = position + 1
            while end < len(recent) and recent[end] == char:
                end += 1
            run = end - position
            if run >= threshold and not (
                source and _longest_run(source, char) >= threshold * _SOURCE_RUN_RATIO
            ):
                return DegradationReport(pattern=char, repeat_count=run)
            position = end
        return None

    def _check_patterns(self, recent: str, source: str) -> DegradationReport | None:
        threshold = self._config.pattern_repeat_threshold
        for length in range(_MIN_PATTERN_LENGTH, _MAX_PATTERN_LENGTH + 1):
            if len(recent) < length * 10:
                continue
            pattern = recent[-length:]
            count = 1
            cursor = len(recent) - length * 2
            while cursor >= 0 and recent[cursor : cursor + length] == pattern:
                count += 1
                cursor -= length
            if count < threshold:
                continue
            if source:
                source_block = self._source_pattern_block(source)
                if source_block > 0 and source_block >= count * length * _SOURCE_PATTERN_RATIO:
                    continue
            return DegradationReport(pattern=pattern, repeat_count=count)
        return None

    def _source_pattern_block(self, source: str) -> int:
        cached = self._pattern_cache.get(source)
        if cached is None:
            cached = _longest_pattern_block(source[-self._config.check_window :])
            self._pattern_cache = {source: cached}
        return cached


def _longest_run(text: str, char: str) -> int:
    longest = current = 0
    for item in text:
        if item == char:
            current += 1
            if current > longest:
                longest = current
        else:
            current = 0
    return longest


def _longest_pattern_block(segment: str) -> int:
    """Length of the longest block made of one repeated 2-5 character pattern."""

    longest = 0
    for length in range(_MIN_PATTERN_LENGTH, _MAX_PATTERN_LENGTH + 1):
        if len(segment) < length * 2:
            continue
        for start in range(len(segment) - length * 2 + 1):
            pattern = segment[start : start + length]
            count = 1
            cursor = start + length
            while cursor + length <= len(segment) and segment[cursor : cursor + length] == pattern:
                count += 1
                cursor += length
            if count > 1:
                longest = max(longest, count * length)
    return longest
