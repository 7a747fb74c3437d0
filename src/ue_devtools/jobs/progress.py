"""Best-effort phase and percentage inference from unstructured tool output."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from ue_devtools.jobs.models import PhaseState, PhaseUpdate, utc_now

_PERCENT_TOKEN = re.compile(r"(?<![\d.])(\d{1,3})%")


@dataclass(slots=True, frozen=True)
class PhaseRule:
    """Substring pattern mapped to a phase label and a suggested percentage."""

    pattern: str
    phase: str
    percent: int

    def matches(self, lowered_line: str) -> bool:
        return self.pattern.lower() in lowered_line


# Evaluated top to bottom; the first match wins for a line. Order follows the
# BuildCookRun pipeline so that more specific markers shadow generic ones.
DEFAULT_PHASE_RULES: tuple[PhaseRule, ...] = (
    PhaseRule("generating project files", "Generating project files…", 10),
    PhaseRule("writing project files", "Writing project files…", 60),
    PhaseRule("discovering modules", "Discovering modules…", 5),
    PhaseRule("parsing headers", "Generating reflection code…", 15),
    PhaseRule("unrealheadertool", "Generating reflection code…", 15),
    PhaseRule("building", "Compiling…", 20),
    PhaseRule("compile", "Compiling…", 25),
    PhaseRule("link", "Linking…", 45),
    PhaseRule("cooking", "Cooking content…", 40),
    PhaseRule("cook", "Cooking content…", 40),
    PhaseRule("staging", "Staging files…", 80),
    PhaseRule("stage", "Staging files…", 80),
    PhaseRule("creating pak", "Creating pak files…", 88),
    PhaseRule("unrealpak", "Creating pak files…", 88),
    PhaseRule("archiving", "Archiving build…", 95),
    PhaseRule("build successful", "Finished", 100),
    PhaseRule("result: succeeded", "Finished", 100),
)


def parse_percent(line: str) -> int | None:
    """Return the first bare `NN%` token in `line`, if it is a valid percentage."""

    for match in _PERCENT_TOKEN.finditer(line):
        value = int(match.group(1))
        if value <= 100:
            return value
    return None


class PhaseProgressTracker:
    """Map output lines to monotonically non-decreasing progress.

    The percentage never moves backwards within one run; `reset` must be called
    at the start of every job so the previous run's value cannot leak in.
    """

    def __init__(
        self,
        rules: Sequence[PhaseRule] = DEFAULT_PHASE_RULES,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rules = tuple(rules)
        self._clock = clock
        self._state = PhaseState()
        self._runs = 0

    @property
    def rules(self) -> tuple[PhaseRule, ...]:
        return self._rules

    @property
    def runs(self) -> int:
        """Number of resets, i.e. job runs this tracker has been armed for."""

        return self._runs

    @property
    def state(self) -> PhaseState:
        return PhaseState(
            phase=self._state.phase,
            percent=self._state.percent,
            updated_at=self._state.updated_at,
        )

    def reset(self) -> None:
        self._state = PhaseState()
        self._runs += 1

    def match_rule(self, line: str) -> PhaseRule | None:
        lowered = line.lower()
        for rule in self._rules:
            if rule.matches(lowered):
                return rule
        return None

    def observe(self, line: str) -> PhaseUpdate | None:
        """Feed one line; return an update when phase or percentage changed."""

        current = self._state
        rule = self.match_rule(line)
        numeric = parse_percent(line)
        numeric_advanced = numeric is not None and numeric > current.percent

        phase = current.phase
        percent = current.percent
        if rule is not None and (rule.percent >= current.percent or numeric_advanced):
            phase = rule.phase
            percent = max(percent, rule.percent)
        if numeric_advanced:
            percent = numeric

        if phase == current.phase and percent == current.percent:
            return None

        updated_at = self._clock()
        self._state = PhaseState(phase=phase, percent=percent, updated_at=updated_at)
        return PhaseUpdate(phase=phase, percent=percent, updated_at=updated_at)
