from __future__ import annotations
from enum import Enum
from typing import Optional, Pattern, Sequence, Union
import re

from .errors import ConfigurationError

PatternSpec = Union[str, Pattern[str], Sequence[Union[str, Pattern[str]]], None]

# Lines worth forwarding: zone changes, login and a fresh log session.
DEFAULT_INCLUDE = (
    "Connecting to instance server",
    ": You have entered",
    "LOG FILE OPENING",
)
# Chat lines: #global, %party, @whisper, $trade, &guild.
# Their text is user-supplied and must never be treated as a control line.
DEFAULT_EXCLUDE = (r"\] [#%@$&]",)


class Verdict(str, Enum):
    ACCEPTED = "accepted"
    NO_MATCH = "no_match"
    EXCLUDED = "excluded"


def compile_pattern(patterns: PatternSpec, *, name: str = "pattern") -> Optional[Pattern[str]]:
    """
    Compile a pattern, or a list of patterns meaning "any of", into one regex.

    None (or an empty list) stays None.
    """
    if patterns is None:
        return None
    if isinstance(patterns, re.Pattern):
        return patterns
    parts = [patterns] if isinstance(patterns, str) else list(patterns)
    if not parts:
        return None
    sources = [p.pattern if isinstance(p, re.Pattern) else str(p) for p in parts]
    joined = sources[0] if len(sources) == 1 else "|".join(f"(?:{s})" for s in sources)
    try:
        return re.compile(joined)
    except re.error as e:
        raise ConfigurationError(f"Invalid regex in {name} {joined!r}: {e}")


class LineFilter:
    """
    Allow/deny predicate over a single line.

    A line is accepted iff `include` matches it and `exclude` does not.
    Without an include pattern nothing is accepted; without an exclude
    pattern nothing is excluded.
    """

    def __init__(
        self,
        include: PatternSpec = DEFAULT_INCLUDE,
        exclude: PatternSpec = DEFAULT_EXCLUDE,
    ) -> None:
        self.include = compile_pattern(include, name="include")
        self.exclude = compile_pattern(exclude, name="exclude")

    @classmethod
    def from_rule(cls, rule) -> "LineFilter":
        return cls(include=rule.include, exclude=rule.exclude)

    def classify(self, line: str) -> Verdict:
        if self.include is None or not self.include.search(line):
            return Verdict.NO_MATCH
        if self.exclude is not None and self.exclude.search(line):
            return Verdict.EXCLUDED
        return Verdict.ACCEPTED

    def accept(self, line: str) -> bool:
        return self.classify(line) is Verdict.ACCEPTED

    __call__ = accept

    def __repr__(self) -> str:
        inc = self.include.pattern if self.include is not None else None
        exc = self.exclude.pattern if self.exclude is not None else None
        return f"LineFilter(include={inc!r}, exclude={exc!r})"
