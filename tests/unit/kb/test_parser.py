"""
Unit tests for the rulebook text parser.

These tests document expected behavior:
- Line classification (Part / Chapter / Header / Body / Blank)
- Chapter and subsection assembly, including identifiers and parts
- Entry splitting with titles and page references
- Conversion into the persisted Chapter -> Section -> Entry tree
"""

from pathlib import Path

import pytest

from runebook.kb.parser import (
    BlankLine,
    BodyLine,
    ChapterMarker,
    HeaderLine,
    ParserState,
    PartMarker,
    build_corpus_tree,
    classify_line,
    parse_rules_text,
    split_entries,
    step,
)

FIXTURE = Path(__file__).parent.parent.parent / "fixtures" / "sample_documents" / "sample_rules.txt"


@pytest.fixture
def sample_text():
    return FIXTURE.read_text(encoding="utf-8")


class TestClassifyLine:
    """Test line grammar."""

    def test_blank(self):
        assert classify_line("   ") == BlankLine()

    def test_part_marker(self):
        assert classify_line("Part 2: Playing the Game") == PartMarker(2, "Playing the Game")

    def test_chapter_marker_strips_dot_leaders(self):
        assert classify_line("Ch. 9: Combat ........ 189") == ChapterMarker(9, "Combat")

    def test_chapter_marker_without_title_is_body(self):
        assert classify_line("Ch. 9: ....... 189") == BodyLine("Ch. 9: ....... 189")

    def test_header_line(self):
        assert classify_line("Making an Attack") == HeaderLine("Making an Attack")
        assert classify_line("Two-Weapon Fighting") == HeaderLine("Two-Weapon Fighting")

    def test_header_rejects_punctuation_and_long_lines(self):
        assert isinstance(classify_line("Attack Rolls:"), BodyLine)
        assert isinstance(classify_line("Cover, Concealment"), BodyLine)
        assert isinstance(classify_line("Ab"), BodyLine)
        assert isinstance(classify_line("A" + "b" * 60), BodyLine)

    def test_all_caps_is_body(self):
        assert classify_line("GOBLIN") == BodyLine("GOBLIN")


class TestStep:
    """Test individual state transitions."""

    def test_body_outside_chapter_is_dropped(self):
        state = step(ParserState(source="srd"), BodyLine("Preamble text"))

        assert state.buffer == ()

    def test_blank_lines_collapse(self):
        state = step(ParserState(source="srd"), ChapterMarker(1, "Intro"))
        state = step(state, BodyLine("one"))
        state = step(state, BlankLine())
        state = step(state, BlankLine())

        assert state.buffer == ("one", "")

    def test_state_is_not_mutated(self):
        initial = ParserState(source="srd")

        step(initial, ChapterMarker(1, "Intro"))

        assert initial.current_chapter is None


class TestParseRulesText:
    """Test chapter and subsection assembly."""

    def test_parses_chapters_in_order(self, sample_text):
        sections = parse_rules_text(sample_text, source="basic_rules")

        assert [s.title for s in sections] == [
            "Step-by-Step Characters", "Combat", "Spells", "Monsters"
        ]
        assert [s.chapter_number for s in sections] == [1, 9, 11, 12]

    def test_chapter_identifiers(self, sample_text):
        sections = parse_rules_text(sample_text, source="basic_rules")

        assert sections[1].id == "basicrules-ch9-combat"
        assert sections[1].source == "basic_rules"

    def test_parts_are_inherited(self, sample_text):
        sections = parse_rules_text(sample_text, source="basic_rules")

        assert sections[0].part == "Creating a Character"
        assert sections[1].part == "Playing the Game"
        assert sections[3].part == "Bestiary"

    def test_subsections(self, sample_text):
        combat = parse_rules_text(sample_text, source="basic_rules")[1]

        assert [s.title for s in combat.subsections] == [
            "Initiative", "Making an Attack", "Grappling"
        ]
        assert combat.subsections[1].id == "basicrules-ch9-combat-making-an-attack"
        assert combat.content.startswith("The clatter of a sword")
        assert "Attack Rolls:" in combat.subsections[1].content

    def test_keywords_are_extracted(self, sample_text):
        combat = parse_rules_text(sample_text, source="basic_rules")[1]

        assert "attack" in combat.keywords
        assert "initiative" in combat.subsections[0].keywords

    def test_preamble_is_dropped(self, sample_text):
        sections = parse_rules_text(sample_text, source="basic_rules")

        assert all("Basic Rules of Adventure" not in s.content for s in sections)

    def test_duplicate_headers_get_unique_ids(self):
        text = "Ch. 1: Intro\nActions\nFirst body line.\nActions\nSecond body line.\n"

        sections = parse_rules_text(text, source="srd")

        ids = [s.id for s in sections[0].subsections]
        assert ids == ["srd-ch1-intro-actions", "srd-ch1-intro-actions-2"]

    def test_deterministic(self, sample_text):
        first = parse_rules_text(sample_text, source="basic_rules")
        second = parse_rules_text(sample_text, source="basic_rules")

        assert first == second

    def test_text_without_chapters(self):
        assert parse_rules_text("Just a paragraph of prose.\n\nAnother one.", "srd") == []

    def test_empty_text(self):
        assert parse_rules_text("", "srd") == []


class TestSplitEntries:
    """Test paragraph-to-entry splitting."""

    def test_one_entry_per_paragraph(self):
        content = "First paragraph is long enough.\n\nSecond paragraph is long enough too."

        entries = split_entries(content)

        assert [e.content for e in entries] == [
            "First paragraph is long enough.",
            "Second paragraph is long enough too.",
        ]

    def test_short_paragraphs_are_skipped(self):
        entries = split_entries("Too short.\n\nThis paragraph is definitely long enough.")

        assert len(entries) == 1

    def test_title_from_first_line(self):
        entries = split_entries("Attack Rolls:\nWhen you make an attack, roll a d20.")

        assert entries[0].title == "Attack Rolls"
        assert entries[0].content == "When you make an attack, roll a d20."

    def test_title_case_first_line(self):
        entries = split_entries("Cover\nWalls, trees and creatures can provide cover.")

        assert entries[0].title == "Cover"

    def test_sentence_first_line_is_not_a_title(self):
        content = "You can move through a space.\nDifficult terrain costs extra movement."

        entries = split_entries(content)

        assert entries[0].title is None
        assert entries[0].content == content

    def test_page_reference(self):
        entries = split_entries("Surprise is determined by the DM (p. 189).")

        assert entries[0].page_reference == "p. 189"

    def test_page_reference_variants(self):
        assert split_entries("Long enough text here (PHB 192)")[0].page_reference == "p. 192"
        assert split_entries("Long enough text here (page 12-13)")[0].page_reference == "p. 12-13"

    def test_respects_min_chars(self):
        assert split_entries("Twelve chars", min_chars=20) == []
        assert len(split_entries("Twelve chars", min_chars=5)) == 1

    def test_blank_content(self):
        assert split_entries("   \n\n  ") == []


class TestBuildCorpusTree:
    """Test conversion into persisted chapter trees."""

    def test_builds_hierarchy(self, sample_text):
        sections = parse_rules_text(sample_text, source="basic_rules")

        trees = build_corpus_tree("doc-1", sections, text=sample_text)

        assert [t.chapter.title for t in trees] == [
            "Step-by-Step Characters", "Combat", "Spells", "Monsters"
        ]
        assert [t.chapter.order_index for t in trees] == [0, 1, 2, 3]
        assert all(t.chapter.document_id == "doc-1" for t in trees)

    def test_leading_section_uses_chapter_title(self, sample_text):
        combat = build_corpus_tree("doc-1", parse_rules_text(sample_text, "basic_rules"))[1]

        titles = [s.section.title for s in combat.sections]
        assert titles == ["Combat", "Initiative", "Making an Attack", "Grappling"]
        assert combat.sections[0].section.slug == "basicrules-ch9-combat"

    def test_entries_and_pages(self, sample_text):
        combat = build_corpus_tree("doc-1", parse_rules_text(sample_text, "basic_rules"))[1]

        attack = combat.sections[2]
        assert [e.title for e in attack.entries] == [None, "Attack Rolls"]
        assert [e.order_index for e in attack.entries] == [0, 1]
        assert attack.section.page_start == 193
        assert attack.section.page_end == 194
        assert combat.chapter.page_start == 189
        assert combat.chapter.page_end == 195
        assert combat.entry_count == 5

    def test_empty_sections_are_dropped(self, sample_text):
        spells = build_corpus_tree("doc-1", parse_rules_text(sample_text, "basic_rules"))[2]

        assert [s.section.title for s in spells.sections] == ["Fireball", "Detect Magic"]
        assert [s.section.order_index for s in spells.sections] == [0, 1]

    def test_ids_link_parents(self, sample_text):
        tree = build_corpus_tree("doc-1", parse_rules_text(sample_text, "basic_rules"))[0]

        for section_tree in tree.sections:
            assert section_tree.section.chapter_id == tree.chapter.id
            for entry in section_tree.entries:
                assert entry.section_id == section_tree.section.id

    def test_fallback_chapter_for_unstructured_text(self):
        text = "A rule without any chapter heading at all.\n\nAnother rule paragraph here."

        trees = build_corpus_tree("doc-1", [], text=text, source="notes")

        assert len(trees) == 1
        assert trees[0].chapter.title == "Content"
        assert trees[0].sections[0].section.title == "Main Content"
        assert trees[0].entry_count == 2

    def test_no_fallback_without_text(self):
        assert build_corpus_tree("doc-1", [], text="   ") == []
        assert build_corpus_tree("doc-1", []) == []

    def test_chapter_without_entries_is_dropped(self):
        sections = parse_rules_text("Ch. 1: Empty\nShort.\nCh. 2: Real\n" + "x" * 40, "srd")

        trees = build_corpus_tree("doc-1", sections)

        assert [t.chapter.title for t in trees] == ["Real"]
        assert trees[0].chapter.order_index == 0
