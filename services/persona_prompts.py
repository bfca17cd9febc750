"""Prompt helpers for persona generation and illustration."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

MAX_KNOWLEDGE_CHARS = 6000


def persona_system_prompt() -> str:
    """Return the system prompt that fixes the persona document layout."""
    return (
        "You are a creative writer who designs roleplay characters. "
        "Always answer with a Markdown document using exactly these headers, in this order:\n"
        "# <Name>'s Profile\n"
        "## Personality\n"
        "# The Roleplay's Setup\n"
        "# First Message\n"
        "Put a blank line after the First Message header and write nothing after the first message."
    )


def persona_user_prompt(
    concept: str,
    subject_name: str = "",
    point_of_view: str = "first",
    knowledge_base: Optional[Any] = None,
) -> str:
    """Return the user prompt describing the requested persona."""
    name_block = (
        f"The character's name is {subject_name}." if subject_name else "Invent a fitting name for the character."
    )
    if point_of_view == "third":
        voice = "Write the profile in the third person, opening with \"<Name> is ...\"."
    else:
        voice = "Write the profile in the first person, as the character introducing themselves (\"The name's <Name>\")."

    parts = [f"Character concept:\n{concept}", name_block, voice]
    knowledge = summarize_knowledge_base(knowledge_base)
    if knowledge:
        parts.append(f"World knowledge to respect:\n{knowledge}")
    return "\n\n".join(parts)


def effective_concept(concept: str, reference_description: str = "") -> str:
    """Fold the reference appearance guidance into the concept."""
    if reference_description:
        return f"{concept}\n\nReference appearance guidance:\n{reference_description}"
    return concept


def summarize_knowledge_base(knowledge_base: Optional[Any]) -> str:
    """Flatten a lorebook-style knowledge base into prompt text.

    Accepts `{"entries": {...}}` or `{"entries": [...]}` with `content` and
    `key`/`keys` per entry; any other JSON is embedded as-is. The result is
    capped at `MAX_KNOWLEDGE_CHARS`.
    """
    if knowledge_base is None:
        return ""

    entries: List[Dict[str, Any]] = []
    raw_entries = knowledge_base.get("entries") if isinstance(knowledge_base, dict) else None
    if isinstance(raw_entries, dict):
        entries = [e for e in raw_entries.values() if isinstance(e, dict)]
    elif isinstance(raw_entries, list):
        entries = [e for e in raw_entries if isinstance(e, dict)]

    if entries:
        lines = []
        for entry in entries:
            content = str(entry.get("content") or "").strip()
            if not content:
                continue
            keys = entry.get("key") or entry.get("keys") or []
            if isinstance(keys, str):
                keys = [keys]
            label = ", ".join(str(k) for k in keys) if keys else "Entry"
            lines.append(f"- {label}: {content}")
        text = "\n".join(lines)
    else:
        text = json.dumps(knowledge_base, ensure_ascii=False)

    return text[:MAX_KNOWLEDGE_CHARS]


def illustration_prompt(name: str, description: str) -> str:
    """Return a default image prompt for a persona portrait."""
    summary = " ".join(description.split())[:800]
    return f"Character portrait of {name}. {summary}".strip()
