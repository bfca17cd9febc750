import pytest

from conftest import RHEA_TRANSCRIPT
from models.persona_records import PLACEHOLDER_NAME
from services.persona_parser import (
    FIRST_MESSAGE_RULES,
    NAME_RULES,
    PERSONALITY_RULES,
    SectionParser,
    default_scenario,
    first_match,
)


@pytest.fixture
def parser():
    return SectionParser()


def test_parses_complete_profile(parser):
    record = parser.parse(RHEA_TRANSCRIPT)

    assert record.name == "Rhea"
    assert record.description.startswith("# Rhea's Profile\n\nRhea is a wandering blacksmith.")
    assert record.personality == "## Personality\nStoic but kind."
    assert record.scenario == "# The Roleplay's Setup\nA mountain forge."
    assert record.first_message == "Welcome, traveler."
    assert record.to_dict()["firstMessage"] == "Welcome, traveler."


def test_transcript_without_headers_degrades_to_placeholders(parser):
    record = parser.parse("Just some text without any structure.")

    assert record.name == PLACEHOLDER_NAME
    assert record.description == ""
    assert record.personality == ""
    assert record.scenario == default_scenario(PLACEHOLDER_NAME)
    assert record.first_message == ""


@pytest.mark.parametrize("raw", [None, "", 42])
def test_non_text_input_never_raises(parser, raw):
    record = parser.parse(raw)
    assert record.name == PLACEHOLDER_NAME
    assert record.first_message == ""


def test_first_person_introduction_supplies_name(parser):
    raw = "The name's Kai Storm. I fix engines for a living.\n\n## Personality\nGruff."
    record = parser.parse(raw)

    assert record.name == "Kai Storm"
    assert record.description == "# Kai Storm's Profile\n\nThe name's Kai Storm. I fix engines for a living."
    assert record.personality == "## Personality\nGruff."


def test_third_person_opening_supplies_name_and_drops_stray_header(parser):
    raw = "# Overview\nMara Vell is a smuggler.\n\n## Personality\nSly."
    record = parser.parse(raw)

    assert record.name == "Mara Vell"
    assert record.description == "# Mara Vell's Profile\n\nMara Vell is a smuggler."


def test_profile_header_keeps_escaped_apostrophe():
    assert first_match(NAME_RULES, "# O\\'Neil's Profile\n\nText") == "O\\'Neil"


def test_profile_header_only_counts_at_start():
    # Not anchored at the start, and no other rule applies.
    assert first_match(NAME_RULES, "intro\n# Rhea's Profile") is None


def test_personality_heading_variant_and_deeper_boundary():
    raw = "## My Personality\nCalm and patient.\n\n### The Roleplay's Setup\nA quiet harbor."
    assert first_match(PERSONALITY_RULES, raw) == "## My Personality\nCalm and patient."


def test_personality_runs_to_end_without_setup():
    raw = "Intro\n## Personality\nCurious.\nBold."
    assert first_match(PERSONALITY_RULES, raw) == "## Personality\nCurious.\nBold."


def test_first_message_without_blank_line():
    assert first_match(FIRST_MESSAGE_RULES, "# First Message\nHello there.") == "Hello there."


def test_first_message_missing_body_yields_empty(parser):
    record = parser.parse("# Rhea's Profile\n\nRhea forges.\n\n# First Message\n")
    assert record.first_message == ""


def test_missing_setup_uses_default_scenario(parser):
    record = parser.parse("# Rhea's Profile\n\nRhea forges.\n\n## Personality\nWarm.")
    assert record.scenario == default_scenario("Rhea")
    assert "{{user}}" in record.scenario


def test_deeper_personality_heading_is_not_split(parser):
    record = parser.parse("# Rhea's Profile\n\nRhea forges.\n\n### Personality\nWarm.")

    assert record.description == "# Rhea's Profile\n\nRhea forges."
    assert record.personality == "### Personality\nWarm."
