"""
Spell and monster stat-block extraction.

Sibling parsers to ``runebook.kb.parser``. Both scan the same rulebook text
line by line and pull flat, typed records out of it:

- ``parse_spells``: entries following a "Spell Descriptions" line
- ``parse_monsters``: ALL-CAPS name lines followed by a size/type line

Property lines are recognised by an ordered tuple of field matchers. Each
matcher returns a tagged ``(field, value)`` pair or ``None``; the first hit
wins. Neither parser raises on malformed input.
"""

import re
from collections.abc import Callable
from enum import Enum
from typing import Any

from runebook.config.logging import get_logger
from runebook.kb.base import AbilityScores, MonsterStats, SpellDefinition
from runebook.kb.parser import CHAPTER_PATTERN, PART_PATTERN

logger = get_logger(__name__)

SPELL_SECTION_TRIGGER = "Spell Descriptions"
HIGHER_LEVELS_MARKER = "At Higher Levels"

SPELL_HEADER_PATTERN = re.compile(r"^[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*$")
SPELL_HEADER_MAX_LENGTH = 40
SPELL_LEVEL_PATTERN = re.compile(
    r"^(\d+)(?:st|nd|rd|th)-level\s+(\w+)(\s*\(ritual\))?$", re.IGNORECASE
)
CANTRIP_PATTERN = re.compile(r"^(\w+)\s+cantrip$", re.IGNORECASE)

MONSTER_HEADER_PATTERN = re.compile(r"^[A-Z][A-Z\s]+$")
MONSTER_HEADER_MAX_LENGTH = 40
SIZE_TYPE_PATTERN = re.compile(
    r"^(Tiny|Small|Medium|Large|Huge|Gargantuan)\s+(\w+)"
    r"(?:\s*\(([^)]+)\))?"
    r"(?:,\s*(.+?))?\s*$",
    re.IGNORECASE,
)
ABILITY_SCORE_PATTERN = re.compile(r"(\d+)\s+\([+\-−–]?\d+\)")


class SpellField(str, Enum):
    CASTING_TIME = "casting_time"
    RANGE = "range"
    COMPONENTS = "components"
    DURATION = "duration"


class MonsterField(str, Enum):
    ARMOR_CLASS = "armor_class"
    HIT_POINTS = "hit_points"
    SPEED = "speed"
    CHALLENGE = "challenge_rating"
    ABILITY_SCORES = "ability_scores"
    SENSES = "senses"
    LANGUAGES = "languages"


FieldMatch = tuple[Enum, Any]
FieldMatcher = Callable[[str], FieldMatch | None]


def _labelled(field: Enum, label: str) -> FieldMatcher:
    """Matcher for ``Label: value`` lines."""
    pattern = re.compile(rf"^{label}:\s*(.+)$", re.IGNORECASE)

    def matcher(line: str) -> FieldMatch | None:
        match = pattern.match(line)
        return (field, match.group(1).strip()) if match else None

    return matcher


def _regex(field: Enum, pattern: str, convert: Callable[[re.Match], Any]) -> FieldMatcher:
    compiled = re.compile(pattern, re.IGNORECASE)

    def matcher(line: str) -> FieldMatch | None:
        match = compiled.match(line)
        return (field, convert(match)) if match else None

    return matcher


def _prefixed(field: Enum, prefix: str) -> FieldMatcher:
    """Matcher for lines that start with a bare label, e.g. ``Senses darkvision 60 ft.``"""
    pattern = re.compile(rf"^{prefix}\s*", re.IGNORECASE)

    def matcher(line: str) -> FieldMatch | None:
        if not line.lower().startswith(prefix.lower()):
            return None
        return field, pattern.sub("", line, count=1)

    return matcher


def _ability_scores(line: str) -> FieldMatch | None:
    if not re.match(r"^\d+\s+\([+\-−–]?\d+\)\s+\d+", line):
        return None
    scores = [int(s) for s in ABILITY_SCORE_PATTERN.findall(line)]
    if len(scores) != 6:
        return None
    names = ("strength", "dexterity", "constitution", "intelligence", "wisdom", "charisma")
    return MonsterField.ABILITY_SCORES, AbilityScores(**dict(zip(names, scores)))


SPELL_FIELD_MATCHERS: tuple[FieldMatcher, ...] = (
    _labelled(SpellField.CASTING_TIME, "Casting Time"),
    _labelled(SpellField.RANGE, "Range"),
    _labelled(SpellField.COMPONENTS, "Components"),
    _labelled(SpellField.DURATION, "Duration"),
)

MONSTER_FIELD_MATCHERS: tuple[FieldMatcher, ...] = (
    _regex(MonsterField.ARMOR_CLASS, r"^Armor Class\s+(\d+)", lambda m: int(m.group(1))),
    _regex(
        MonsterField.HIT_POINTS,
        r"^Hit Points\s+(\d+)\s*\(([^)]+)\)",
        lambda m: f"{m.group(1)} ({m.group(2)})",
    ),
    _regex(MonsterField.SPEED, r"^Speed\s+(.+)$", lambda m: m.group(1).strip()),
    _regex(MonsterField.CHALLENGE, r"^Challenge\s+([^\s]+)\s*\(", lambda m: m.group(1)),
    _ability_scores,
    _prefixed(MonsterField.SENSES, "Senses"),
    _prefixed(MonsterField.LANGUAGES, "Languages"),
)


def match_field(line: str, matchers: tuple[FieldMatcher, ...]) -> FieldMatch | None:
    """Return the first matcher's tagged result for ``line``, or None."""
    for matcher in matchers:
        result = matcher(line)
        if result is not None:
            return result
    return None


def _next_line(lines: list[str], index: int) -> str:
    return lines[index + 1].strip() if index + 1 < len(lines) else ""


# ---------------------------------------------------------------------------
# Spells
# ---------------------------------------------------------------------------


def _spell_level(line: str) -> tuple[int, str, bool] | None:
    """Parse ``3rd-level evocation`` / ``Evocation cantrip`` into (level, school, ritual)."""
    if match := SPELL_LEVEL_PATTERN.match(line):
        level = int(match.group(1))
        if level > 9:
            return None
        return level, match.group(2).lower(), bool(match.group(3))
    if match := CANTRIP_PATTERN.match(line):
        return 0, match.group(1).lower(), False
    return None


def _is_spell_header(line: str) -> bool:
    return (
        0 < len(line) < SPELL_HEADER_MAX_LENGTH
        and SPELL_HEADER_PATTERN.match(line) is not None
        and not line.startswith("At Higher")
    )


def _finish_spell(draft: dict[str, Any], description: list[str]) -> SpellDefinition:
    text = "\n".join(description).strip()
    higher_levels = None
    marker = text.find(HIGHER_LEVELS_MARKER)
    if marker != -1:
        higher_levels = text[marker:].strip()
        text = text[:marker].strip()
    return SpellDefinition(**draft, description=text, higher_levels=higher_levels)


def parse_spells(content: str, source: str) -> list[SpellDefinition]:
    """
    Extract spell definitions from the "Spell Descriptions" part of a rulebook.

    A Title-Case line opens a spell only when the very next line is a level
    line (``3rd-level evocation``, ``2nd-level divination (ritual)`` or
    ``Conjuration cantrip``). Any Title-Case line closes the spell before it.

    Example:
        >>> spells = parse_spells(text, source="basic_rules")
        >>> spells[0].name, spells[0].level, spells[0].school
        ('Fireball', 3, 'evocation')
    """
    spells: list[SpellDefinition] = []
    lines = content.splitlines()

    in_spell_section = False
    draft: dict[str, Any] | None = None
    description: list[str] = []

    index = 0
    while index < len(lines):
        line = lines[index].strip()

        if line == SPELL_SECTION_TRIGGER:
            in_spell_section = True
            index += 1
            continue

        if not in_spell_section:
            index += 1
            continue

        # A new Part or Chapter ends the spell list
        if PART_PATTERN.match(line) or CHAPTER_PATTERN.match(line):
            if draft is not None:
                spells.append(_finish_spell(draft, description))
            draft, description = None, []
            in_spell_section = False
            index += 1
            continue

        if _is_spell_header(line):
            if draft is not None:
                spells.append(_finish_spell(draft, description))
            draft, description = None, []

            level_info = _spell_level(_next_line(lines, index))
            if level_info is not None:
                level, school, ritual = level_info
                draft = {
                    "name": line,
                    "level": level,
                    "school": school,
                    "ritual": ritual,
                    "source": source,
                }
                index += 2
                continue

        if draft is not None and line:
            field_match = match_field(line, SPELL_FIELD_MATCHERS)
            if field_match is not None:
                field, value = field_match
                draft[field.value] = value
            else:
                description.append(line)

        index += 1

    if draft is not None:
        spells.append(_finish_spell(draft, description))

    logger.debug(f"Parsed {len(spells)} spells from source '{source}'")
    return spells


# ---------------------------------------------------------------------------
# Monsters
# ---------------------------------------------------------------------------


def _title_case(name: str) -> str:
    return " ".join(word[:1] + word[1:].lower() for word in name.split())


def parse_monsters(content: str, source: str) -> list[MonsterStats]:
    """
    Extract monster stat blocks.

    A block starts at an ALL-CAPS line under 40 characters whose next line
    matches ``<Size> <type> (<tag>), <alignment>``. Recognised field lines
    fill the record; everything else inside a block is ignored. A monster is
    kept only if its Armor Class line was found.
    """
    monsters: list[MonsterStats] = []
    lines = content.splitlines()

    draft: dict[str, Any] | None = None

    def finish() -> None:
        if draft is not None and draft.get("name") and MonsterField.ARMOR_CLASS.value in draft:
            monsters.append(MonsterStats(**draft))

    index = 0
    while index < len(lines):
        line = lines[index].strip()
        if not line:
            index += 1
            continue

        if MONSTER_HEADER_PATTERN.match(line) and len(line) < MONSTER_HEADER_MAX_LENGTH:
            size_match = SIZE_TYPE_PATTERN.match(_next_line(lines, index))
            if size_match:
                finish()
                draft = {
                    "name": _title_case(line),
                    "size": size_match.group(1).capitalize(),
                    "creature_type": size_match.group(2).lower(),
                    "alignment": (size_match.group(4) or "unaligned").strip(),
                    "source": source,
                }
                index += 2
                continue

        if draft is not None:
            field_match = match_field(line, MONSTER_FIELD_MATCHERS)
            if field_match is not None:
                field, value = field_match
                draft[field.value] = value

        index += 1

    finish()

    logger.debug(f"Parsed {len(monsters)} monsters from source '{source}'")
    return monsters
