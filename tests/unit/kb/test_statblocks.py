"""
Unit tests for spell and monster stat-block parsing.
"""

from pathlib import Path

import pytest

from runebook.kb.statblocks import (
    MONSTER_FIELD_MATCHERS,
    SPELL_FIELD_MATCHERS,
    MonsterField,
    SpellField,
    match_field,
    parse_monsters,
    parse_spells,
)

FIXTURE = Path(__file__).parent.parent.parent / "fixtures" / "sample_documents" / "sample_rules.txt"


@pytest.fixture
def sample_text():
    return FIXTURE.read_text(encoding="utf-8")


class TestFieldMatchers:
    """Test ordered field matchers."""

    def test_spell_fields(self):
        assert match_field("Casting Time: 1 action", SPELL_FIELD_MATCHERS) == (
            SpellField.CASTING_TIME, "1 action"
        )
        assert match_field("Range: 150 feet", SPELL_FIELD_MATCHERS) == (SpellField.RANGE, "150 feet")

    def test_unrecognised_line(self):
        assert match_field("A bright streak flashes", SPELL_FIELD_MATCHERS) is None

    def test_monster_fields(self):
        assert match_field("Armor Class 15 (leather armor)", MONSTER_FIELD_MATCHERS) == (
            MonsterField.ARMOR_CLASS, 15
        )
        assert match_field("Hit Points 7 (2d6)", MONSTER_FIELD_MATCHERS) == (
            MonsterField.HIT_POINTS, "7 (2d6)"
        )
        assert match_field("Challenge 1/4 (50 XP)", MONSTER_FIELD_MATCHERS) == (
            MonsterField.CHALLENGE, "1/4"
        )

    def test_ability_scores_need_six_values(self):
        assert match_field("8 (-1) 14 (+2) 10 (+0)", MONSTER_FIELD_MATCHERS) is None

        field, scores = match_field(
            "8 (-1) 14 (+2) 10 (+0) 10 (+0) 8 (-1) 8 (-1)", MONSTER_FIELD_MATCHERS
        )
        assert field is MonsterField.ABILITY_SCORES
        assert scores.dexterity == 14
        assert scores.charisma == 8


class TestParseSpells:
    """Test spell extraction."""

    def test_parses_fixture_spells(self, sample_text):
        spells = parse_spells(sample_text, source="basic_rules")

        assert [s.name for s in spells] == ["Fireball", "Detect Magic"]

    def test_spell_fields(self, sample_text):
        fireball = parse_spells(sample_text, source="basic_rules")[0]

        assert fireball.level == 3
        assert fireball.school == "evocation"
        assert fireball.ritual is False
        assert fireball.casting_time == "1 action"
        assert fireball.range == "150 feet"
        assert fireball.components.startswith("V, S, M")
        assert fireball.duration == "Instantaneous"
        assert fireball.source == "basic_rules"

    def test_higher_levels_split_from_description(self, sample_text):
        fireball = parse_spells(sample_text, source="basic_rules")[0]

        assert fireball.description.startswith("A bright streak")
        assert "At Higher Levels" not in fireball.description
        assert fireball.higher_levels.startswith("At Higher Levels.")
        assert "1d6" in fireball.higher_levels

    def test_ritual_flag(self, sample_text):
        detect = parse_spells(sample_text, source="basic_rules")[1]

        assert detect.level == 1
        assert detect.school == "divination"
        assert detect.ritual is True
        assert detect.higher_levels is None

    def test_cantrip(self):
        text = "Spell Descriptions\nFire Bolt\nEvocation cantrip\nRange: 120 feet\nYou hurl a mote of fire.\n"

        spells = parse_spells(text, source="srd")

        assert spells[0].level == 0
        assert spells[0].school == "evocation"
        assert spells[0].description == "You hurl a mote of fire."

    def test_requires_trigger_line(self):
        text = "Fireball\n3rd-level evocation\nRange: 150 feet\n"

        assert parse_spells(text, source="srd") == []

    def test_header_without_level_line_is_not_a_spell(self):
        text = "Spell Descriptions\nCasting Spells\nEvery spell has a level.\n"

        assert parse_spells(text, source="srd") == []

    def test_level_above_nine_is_rejected(self):
        text = "Spell Descriptions\nWish Plus\n10th-level conjuration\n"

        assert parse_spells(text, source="srd") == []

    def test_malformed_input_does_not_raise(self):
        assert parse_spells("Spell Descriptions\n\n\n:::\n", source="srd") == []


class TestParseMonsters:
    """Test monster stat-block extraction."""

    def test_parses_goblin(self, sample_text):
        monsters = parse_monsters(sample_text, source="basic_rules")

        assert len(monsters) == 1
        goblin = monsters[0]
        assert goblin.name == "Goblin"
        assert goblin.size == "Small"
        assert goblin.creature_type == "humanoid"
        assert goblin.alignment == "neutral evil"
        assert goblin.armor_class == 15
        assert goblin.hit_points == "7 (2d6)"
        assert goblin.speed == "30 ft."
        assert goblin.ability_scores.dexterity == 14
        assert goblin.senses.startswith("darkvision 60 ft.")
        assert goblin.languages == "Common, Goblin"
        assert goblin.challenge_rating == "1/4"

    def test_alignment_defaults_to_unaligned(self):
        text = "GIANT RAT\nSmall beast\nArmor Class 12\n"

        rat = parse_monsters(text, source="srd")[0]

        assert rat.name == "Giant Rat"
        assert rat.alignment == "unaligned"

    def test_requires_armor_class(self):
        text = "MYSTERY BEAST\nLarge monstrosity, chaotic evil\nHit Points 30 (4d10)\n"

        assert parse_monsters(text, source="srd") == []

    def test_consecutive_blocks(self):
        text = (
            "WOLF\nMedium beast, unaligned\nArmor Class 13 (natural armor)\n\n"
            "BAT\nTiny beast, unaligned\nArmor Class 12\n"
        )

        monsters = parse_monsters(text, source="srd")

        assert [(m.name, m.armor_class) for m in monsters] == [("Wolf", 13), ("Bat", 12)]

    def test_caps_line_without_size_line_is_ignored(self):
        assert parse_monsters("CHAPTER NOTES\nSome prose here.\n", source="srd") == []
