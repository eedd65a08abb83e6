"""qrforce/placeholders.py

Placeholder substitution for user-authored prompt templates.

Recognized tokens:
  $1  knowledge block, wrapped in <worldbook_context> tags
  $5  table / outline block, wrapped in <table_data_context> tags
  $6  prior-turn plot artifact
  $7  formatted conversation history
  $U  persona description
  $C  character description

A token preceded by a backslash is escaped and left literal. Absent values
substitute to an empty string, never to the token text. Substitution is a
single regex pass, so text inserted for one token is never expanded again.
"""

from __future__ import annotations

# Standard Library
import dataclasses
import re

PLACEHOLDER_PATTERN: re.Pattern[str] = re.compile(r"(?<!\\)\$([1567UC])")
HISTORY_PATTERN: re.Pattern[str] = re.compile(r"(?<!\\)\$7")


@dataclasses.dataclass(frozen=True, slots=True)
class Substitutions:
    """Raw values for one turn, before wrapping."""

    worldbook: str = ""
    table_data: str = ""
    prior_plot: str = ""
    history: str = ""
    persona: str = ""
    character: str = ""


def uses_history_placeholder(text: str | None) -> bool:
    """Return True when ``text`` contains an unescaped ``$7``."""
    return isinstance(text, str) and HISTORY_PATTERN.search(text) is not None


class PlaceholderResolver:
    """Pure token-to-text mapping over one Substitutions snapshot."""

    def __init__(self, substitutions: Substitutions, *, worldbook_enabled: bool = True) -> None:
        self.substitutions = substitutions
        worldbook = substitutions.worldbook if worldbook_enabled else ""
        self._values: dict[str, str] = {
            "1": f"\n<worldbook_context>\n{worldbook}\n</worldbook_context>\n" if worldbook else "",
            "5": (
                f"\n<table_data_context>\n{substitutions.table_data}\n</table_data_context>\n"
                if substitutions.table_data
                else ""
            ),
            "6": substitutions.prior_plot,
            "7": substitutions.history,
            "U": substitutions.persona,
            "C": substitutions.character,
        }

    def value(self, token: str) -> str:
        """Return the substitution for a token name such as ``"1"`` or ``"U"``."""
        return self._values.get(token, "")

    def resolve(self, text: str | None) -> str:
        """Substitute every unescaped token in ``text``."""
        if not isinstance(text, str):
            return ""
        return PLACEHOLDER_PATTERN.sub(lambda match: self._values.get(match.group(1), ""), text)
