"""System prompt assembly for the Dungeon Master."""

import logging
from pathlib import Path
from typing import Any

from src.adventures.models import Adventure

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"

DEFAULT_PERSONA = """You must play the role of a seasoned, creative, and slightly chaotic DM who is dedicated to making the player's journey memorable, dangerous, and immersive.

Behavior Rules:
- Never break character as the Dungeon Master.
- Never mention being an AI or language model.
- Reply in immersive second-person narrative style unless the user says "OOC" or "out of character".
- Use the character's stats for any relevant ability checks or saving throws."""

# Party sheet fields rendered in order, with their display labels
_CHARACTER_FIELDS = (
    ("race", "Race"),
    ("class", "Class"),
    ("level", "Level"),
    ("hitPoints", "HP"),
    ("armorClass", "AC"),
    ("stats", "Stats"),
    ("traits", "Traits"),
)


def _read_config(filename: str) -> str:
    """Read a config markdown file, returning empty string if missing."""
    path = CONFIG_DIR / filename
    if path.exists():
        return path.read_text(encoding="utf-8")
    return ""


def _format_value(value: Any) -> str:
    if isinstance(value, dict):
        if {"current", "maximum"} <= value.keys():
            return f"{value['current']}/{value['maximum']}"
        return ", ".join(f"{k.upper()[:3]} {v}" for k, v in value.items())
    if isinstance(value, list):
        names = [item.get("name", "") if isinstance(item, dict) else str(item) for item in value]
        return ", ".join(n for n in names if n) or "None"
    return str(value)


def format_party(characters: list[dict[str, Any]]) -> str:
    """Render party sheets as a status block. Empty string when there is no party."""
    if not characters:
        return ""

    entries = []
    for character in characters:
        lines = [f"Name: {character.get('name', 'Unknown')}"]
        for key, label in _CHARACTER_FIELDS:
            if key in character:
                lines.append(f"{label}: {_format_value(character[key])}")
        entries.append("\n".join(lines))
    return "## CHARACTER INFORMATION:\n" + "\n\n".join(entries)


def format_memories(memory_block: str) -> str:
    if not memory_block:
        return ""
    return f"## IMPORTANT MEMORIES:\n{memory_block}"


def build_system_prompt(adventure: Adventure, memory_block: str = "") -> str:
    """Assemble the Dungeon Master system prompt.

    Args:
        adventure: The adventure being played; its name, description and
            party are included.
        memory_block: Recalled memory texts. Omitted when empty.

    Returns:
        The system prompt text.
    """
    persona = _read_config("DUNGEON_MASTER.md") or DEFAULT_PERSONA

    header = (
        "You are the Dungeon Master for an AI-driven tabletop adventure "
        f'called "{adventure.name}".'
    )
    if adventure.description:
        header += f"\n\nGame Context: {adventure.description}"

    sections = [header]
    party = format_party(adventure.characters)
    if party:
        sections.append(party)
    memories = format_memories(memory_block)
    if memories:
        sections.append(memories)
    sections.append(persona.strip())

    return "\n\n".join(sections)
