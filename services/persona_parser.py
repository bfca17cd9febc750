"""Deterministic section parser for generated persona transcripts.

Each field is extracted by an ordered list of rules; the first rule whose
pattern matches wins. Rules are plain data so each one can be exercised on
its own. Parsing never raises: a field that cannot be found degrades to its
placeholder or to the empty string.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from models.persona_records import PLACEHOLDER_COUNTERPART, PLACEHOLDER_NAME, StructuredRecord

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldRule:
    """One extraction attempt: a compiled pattern plus how to read the match."""

    name: str
    pattern: re.Pattern
    extract: Callable[[re.Match], str] = lambda match: match.group(1).strip()
    anchored: bool = False

    def apply(self, text: str) -> Optional[str]:
        match = self.pattern.match(text) if self.anchored else self.pattern.search(text)
        if match is None:
            return None
        return self.extract(match)


def first_match(rules: Sequence[FieldRule], text: str) -> Optional[str]:
    """Evaluate `rules` in order and return the first non-None extraction."""
    for rule in rules:
        value = rule.apply(text)
        if value is not None:
            return value
    return None


_CAPITALIZED_PHRASE = r"([A-Z][a-z]+(?: [A-Z][a-z]+)*)"

NAME_RULES = (
    # "# Name's Profile" at the very start; backslash-escaped apostrophes stay in the name.
    FieldRule(
        "profile-header",
        re.compile(r"#\s*([^'\\]*(?:\\.[^'\\]*)*)'s Profile", re.IGNORECASE),
        anchored=True,
    ),
    FieldRule("self-introduction", re.compile(r"The name's\s+" + _CAPITALIZED_PHRASE)),
    FieldRule(
        "third-person",
        re.compile(r"^(?:#\s*[^#\n]+\n+)?" + _CAPITALIZED_PHRASE + r"\s+is\b", re.MULTILINE),
    ),
)

DESCRIPTION_RULES = (
    FieldRule(
        "before-personality",
        re.compile(
            r"(?:#\s*[^#]+?'s Profile[\s\S]*?)?([\s\S]*?)(?=#+\s*(?:My\s+)?Personality)",
            re.IGNORECASE,
        ),
    ),
)

PERSONALITY_RULES = (
    FieldRule(
        "personality-section",
        re.compile(r"(#+\s*(?:My\s+)?Personality[\s\S]*?)(?=#+\s*The Roleplay|\Z)", re.IGNORECASE),
    ),
)

SCENARIO_RULES = (
    FieldRule(
        "roleplay-setup",
        re.compile(r"(#\s*The Roleplay's Setup[\s\S]*?)(?=#+\s*First Message|\Z)", re.IGNORECASE),
    ),
)

FIRST_MESSAGE_RULES = (
    FieldRule(
        "header-blank-line",
        re.compile(r"#\s*First Message\s*\n\n([\s\S]+?)\Z", re.IGNORECASE),
    ),
    FieldRule(
        "header-direct",
        re.compile(r"#\s*First Message\s*\n([\s\S]+?)\Z", re.IGNORECASE),
    ),
)

_STRAY_HEADER = re.compile(r"^#\s*[^#\n]+\n+")


def default_scenario(name: str) -> str:
    """Scenario used when the transcript has no roleplay setup section."""
    return (
        f"A roleplay featuring {name}. The setting and circumstances evolve naturally "
        f"through interaction between {name} and {PLACEHOLDER_COUNTERPART}."
    )


class SectionParser:
    """Map a raw generated transcript to a `StructuredRecord`.

    The parser is stateless; one instance can be shared by any number of
    concurrent callers.
    """

    def parse(self, raw: Optional[str]) -> StructuredRecord:
        text = raw if isinstance(raw, str) else ""
        record = StructuredRecord()

        record.name = self.parse_name(text)

        description = first_match(DESCRIPTION_RULES, text)
        if description is not None:
            body = _STRAY_HEADER.sub("", description.strip(), count=1).strip()
            record.description = f"# {record.name}'s Profile\n\n{body}" if record.name else body
        else:
            LOGGER.info("No personality header found; description left empty.")

        personality = first_match(PERSONALITY_RULES, text)
        if personality is None:
            LOGGER.info("No personality section found.")
        record.personality = personality or ""

        scenario = first_match(SCENARIO_RULES, text)
        if scenario is None:
            LOGGER.info("No roleplay setup found; using default scenario for %s.", record.name)
            scenario = default_scenario(record.name)
        record.scenario = scenario

        first_message = first_match(FIRST_MESSAGE_RULES, text)
        if first_message is None:
            LOGGER.info("No first message section found.")
        record.first_message = first_message or ""

        return record

    def parse_name(self, text: str) -> str:
        name = first_match(NAME_RULES, text)
        if not name:
            LOGGER.info("Could not extract character name. Using default.")
            return PLACEHOLDER_NAME
        return name
