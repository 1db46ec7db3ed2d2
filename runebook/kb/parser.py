"""
Rulebook text parser.

Turns raw rulebook text into RuleSections (one per chapter, with
subsections) and then into the persisted Chapter -> Section -> Entry tree.

The parser is an explicit fold: every line is classified into a tagged event,
and ``step(state, event)`` returns a new immutable ``ParserState``. Nothing
here raises on malformed input; a line that does not satisfy a marker's
grammar is treated as body text.

Line grammar, highest precedence first:

    Part 2: Rules of the Game          -> PartMarker
    Ch. 9: Combat ........... 189      -> ChapterMarker (dot leaders stripped)
    Making an Attack                   -> HeaderLine (only inside a chapter)
    anything else                      -> BodyLine
    (empty)                            -> BlankLine

Example:
    >>> sections = parse_rules_text(text, source="basic_rules")
    >>> trees = build_corpus_tree(document_id, sections, text=text)
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from functools import reduce

from runebook.kb.base import (
    Chapter,
    ChapterTree,
    Entry,
    RuleSection,
    RuleSubsection,
    Section,
    SectionTree,
)
from runebook.kb.keywords import extract_keywords, slugify

PART_PATTERN = re.compile(r"^Part\s+(\d+):\s*(.+)$")
CHAPTER_PATTERN = re.compile(r"^Ch\.\s*(\d+):\s*(.+)$")
DOT_LEADER_PATTERN = re.compile(r"\s*\.{2,}.*$")
HEADER_PATTERN = re.compile(r"^[A-Z][a-z][A-Za-z\s'-]*$")
HEADER_MIN_LENGTH = 3
HEADER_MAX_LENGTH = 59

PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
ENTRY_TITLE_PATTERN = re.compile(r"^[A-Z][A-Za-z\s]+$")
ENTRY_TITLE_MAX_LENGTH = 80
PAGE_REFERENCE_PATTERN = re.compile(
    r"\((?:p\.?\s*|PHB\s*|page\s*)(\d+(?:-\d+)?)\)", re.IGNORECASE
)
DEFAULT_MIN_ENTRY_CHARS = 20

FALLBACK_CHAPTER_TITLE = "Content"
FALLBACK_SECTION_TITLE = "Main Content"


# ---------------------------------------------------------------------------
# Line events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartMarker:
    number: int
    title: str


@dataclass(frozen=True)
class ChapterMarker:
    number: int
    title: str


@dataclass(frozen=True)
class HeaderLine:
    text: str


@dataclass(frozen=True)
class BodyLine:
    text: str


@dataclass(frozen=True)
class BlankLine:
    pass


LineEvent = PartMarker | ChapterMarker | HeaderLine | BodyLine | BlankLine


def classify_line(line: str) -> LineEvent:
    """Classify one raw line. Context-dependent rules are applied in ``step``."""
    text = line.strip()
    if not text:
        return BlankLine()

    if match := PART_PATTERN.match(text):
        return PartMarker(number=int(match.group(1)), title=match.group(2).strip())

    if match := CHAPTER_PATTERN.match(text):
        title = DOT_LEADER_PATTERN.sub("", match.group(2)).strip()
        if title:
            return ChapterMarker(number=int(match.group(1)), title=title)
        return BodyLine(text)

    if (
        HEADER_MIN_LENGTH <= len(text) <= HEADER_MAX_LENGTH
        and HEADER_PATTERN.match(text)
    ):
        return HeaderLine(text)

    return BodyLine(text)


# ---------------------------------------------------------------------------
# Parser state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubsectionDraft:
    id: str
    title: str
    content: str = ""


@dataclass(frozen=True)
class ChapterDraft:
    id: str
    title: str
    number: int
    part: str | None
    content: str = ""
    subsections: tuple[SubsectionDraft, ...] = ()


@dataclass(frozen=True)
class ParserState:
    """
    Immutable parser cursor.

    ``buffer`` holds body lines (and single "" paragraph breaks) not yet
    flushed into the open subsection, or into the chapter when no
    subsection is open.
    """

    source: str
    current_part: str | None = None
    current_chapter: ChapterDraft | None = None
    current_subsection: SubsectionDraft | None = None
    buffer: tuple[str, ...] = ()
    finished: tuple[RuleSection, ...] = ()
    used_ids: frozenset[str] = field(default_factory=frozenset)


def _unique_id(base: str, used: frozenset[str]) -> str:
    if base not in used:
        return base
    suffix = 2
    while f"{base}-{suffix}" in used:
        suffix += 1
    return f"{base}-{suffix}"


def _append_text(existing: str, text: str) -> str:
    if not text:
        return existing
    return f"{existing}\n\n{text}" if existing else text


def _flush(state: ParserState) -> ParserState:
    text = "\n".join(state.buffer).strip()
    if state.current_subsection is not None:
        subsection = replace(
            state.current_subsection,
            content=_append_text(state.current_subsection.content, text),
        )
        return replace(state, current_subsection=subsection, buffer=())
    if state.current_chapter is not None:
        chapter = replace(
            state.current_chapter,
            content=_append_text(state.current_chapter.content, text),
        )
        return replace(state, current_chapter=chapter, buffer=())
    return replace(state, buffer=())


def _close_subsection(state: ParserState) -> ParserState:
    state = _flush(state)
    if state.current_subsection is None or state.current_chapter is None:
        return state
    chapter = replace(
        state.current_chapter,
        subsections=state.current_chapter.subsections + (state.current_subsection,),
    )
    return replace(state, current_chapter=chapter, current_subsection=None)


def _finalize_chapter(draft: ChapterDraft, source: str) -> RuleSection:
    subsections = [
        RuleSubsection(
            id=sub.id,
            title=sub.title,
            content=sub.content,
            keywords=extract_keywords(f"{sub.title} {sub.content}"),
        )
        for sub in draft.subsections
    ]
    corpus = " ".join(
        [draft.title, draft.content] + [f"{s.title} {s.content}" for s in draft.subsections]
    )
    return RuleSection(
        id=draft.id,
        title=draft.title,
        source=source,
        chapter_number=draft.number,
        part=draft.part,
        content=draft.content,
        subsections=subsections,
        keywords=extract_keywords(corpus),
    )


def _close_chapter(state: ParserState) -> ParserState:
    state = _close_subsection(state)
    if state.current_chapter is None:
        return state
    section = _finalize_chapter(state.current_chapter, state.source)
    return replace(
        state,
        current_chapter=None,
        finished=state.finished + (section,),
    )


def step(state: ParserState, event: LineEvent) -> ParserState:
    """Apply one line event and return the next state."""
    match event:
        case BlankLine():
            if state.buffer and state.buffer[-1] != "":
                return replace(state, buffer=state.buffer + ("",))
            return state

        case PartMarker(title=title):
            state = _close_chapter(state)
            return replace(state, current_part=title)

        case ChapterMarker(number=number, title=title):
            state = _close_chapter(state)
            chapter_id = _unique_id(
                slugify(f"{state.source}-ch{number}-{title}"), state.used_ids
            )
            draft = ChapterDraft(
                id=chapter_id, title=title, number=number, part=state.current_part
            )
            return replace(
                state,
                current_chapter=draft,
                used_ids=state.used_ids | {chapter_id},
            )

        case HeaderLine(text=text) if state.current_chapter is not None:
            state = _close_subsection(state)
            subsection_id = _unique_id(
                slugify(f"{state.current_chapter.id}-{text}"), state.used_ids
            )
            return replace(
                state,
                current_subsection=SubsectionDraft(id=subsection_id, title=text),
                used_ids=state.used_ids | {subsection_id},
            )

        case HeaderLine(text=text) | BodyLine(text=text):
            # Text outside any chapter has no owner and is dropped
            if state.current_chapter is None:
                return state
            return replace(state, buffer=state.buffer + (text,))

    return state


def parse_rules_text(content: str, source: str) -> list[RuleSection]:
    """
    Parse rulebook text into one RuleSection per chapter, in document order.

    Deterministic: the same input always yields the same sections, ids and
    keyword lists. Never raises on malformed text.

    Args:
        content: Raw text of the rulebook
        source: Source tag used in identifiers, e.g. "basic_rules"

    Returns:
        Possibly empty list of RuleSections
    """
    events = (classify_line(line) for line in content.splitlines())
    state = reduce(step, events, ParserState(source=source))
    return list(_close_chapter(state).finished)


# ---------------------------------------------------------------------------
# Entries and the persisted tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntryDraft:
    content: str
    title: str | None = None
    page_reference: str | None = None


def _page_reference(text: str) -> str | None:
    match = PAGE_REFERENCE_PATTERN.search(text)
    return f"p. {match.group(1)}" if match else None


def split_entries(content: str, min_chars: int = DEFAULT_MIN_ENTRY_CHARS) -> list[EntryDraft]:
    """
    Split a section body into entries, one per paragraph.

    Paragraphs shorter than ``min_chars`` are skipped. A multi-line
    paragraph whose first line reads like a heading donates it as the
    entry title. If nothing qualifies, the whole body becomes one entry
    when it is long enough.
    """
    entries: list[EntryDraft] = []

    for raw in PARAGRAPH_SPLIT.split(content):
        paragraph = raw.strip()
        if len(paragraph) < min_chars:
            continue

        title = None
        body = paragraph
        lines = paragraph.split("\n")
        if len(lines) > 1:
            first = lines[0].strip()
            if len(first) < ENTRY_TITLE_MAX_LENGTH and (
                ENTRY_TITLE_PATTERN.match(first) or first.endswith(":")
            ):
                rest = "\n".join(lines[1:]).strip()
                heading = first.replace("*", "").replace(":", "").strip()
                if rest and heading:
                    title = heading
                    body = rest

        entries.append(EntryDraft(
            content=body,
            title=title,
            page_reference=_page_reference(paragraph),
        ))

    stripped = content.strip()
    if not entries and len(stripped) >= min_chars:
        entries.append(EntryDraft(content=stripped, page_reference=_page_reference(stripped)))

    return entries


def _page_span(entries: list[Entry]) -> tuple[int | None, int | None]:
    pages: list[int] = []
    for entry in entries:
        if entry.page_reference:
            pages.extend(int(p) for p in re.findall(r"\d+", entry.page_reference))
    if not pages:
        return None, None
    return min(pages), max(pages)


def _build_section(
    chapter_id: str,
    order_index: int,
    title: str,
    slug: str,
    content: str,
    min_entry_chars: int,
    keywords: list[str] | None = None,
) -> SectionTree | None:
    drafts = split_entries(content, min_chars=min_entry_chars)
    if not drafts:
        return None

    section_id = str(uuid.uuid4())
    entries = [
        Entry(
            id=str(uuid.uuid4()),
            section_id=section_id,
            title=draft.title,
            content=draft.content,
            order_index=index,
            page_reference=draft.page_reference,
        )
        for index, draft in enumerate(drafts)
    ]
    page_start, page_end = _page_span(entries)
    section = Section(
        id=section_id,
        chapter_id=chapter_id,
        title=title,
        slug=slug,
        order_index=order_index,
        page_start=page_start,
        page_end=page_end,
        keywords=keywords if keywords is not None else extract_keywords(f"{title} {content}"),
    )
    return SectionTree(section=section, entries=entries)


def _build_chapter(
    document_id: str,
    order_index: int,
    title: str,
    slug: str,
    blocks: list[tuple[str, str, str, list[str] | None]],
    min_entry_chars: int,
    chapter_number: int | None = None,
    part: str | None = None,
    keywords: list[str] | None = None,
) -> ChapterTree | None:
    chapter_id = str(uuid.uuid4())
    sections: list[SectionTree] = []
    for block_title, block_slug, block_content, block_keywords in blocks:
        tree = _build_section(
            chapter_id,
            len(sections),
            block_title,
            block_slug,
            block_content,
            min_entry_chars,
            block_keywords,
        )
        if tree is not None:
            sections.append(tree)

    if not sections:
        return None

    starts = [s.section.page_start for s in sections if s.section.page_start]
    ends = [s.section.page_end for s in sections if s.section.page_end]
    chapter = Chapter(
        id=chapter_id,
        document_id=document_id,
        title=title,
        slug=slug,
        chapter_number=chapter_number,
        part=part,
        order_index=order_index,
        page_start=min(starts) if starts else None,
        page_end=max(ends) if ends else None,
        keywords=keywords if keywords is not None else extract_keywords(
            " ".join(f"{b[0]} {b[2]}" for b in blocks)
        ),
    )
    return ChapterTree(chapter=chapter, sections=sections)


def build_corpus_tree(
    document_id: str,
    sections: list[RuleSection],
    text: str | None = None,
    source: str | None = None,
    min_entry_chars: int = DEFAULT_MIN_ENTRY_CHARS,
) -> list[ChapterTree]:
    """
    Convert parsed RuleSections into persistable Chapter trees.

    Each RuleSection becomes a Chapter. The chapter's own body becomes a
    leading Section titled like the chapter, followed by one Section per
    subsection. Sections and chapters without any entry are left out, so
    sibling ordering indices stay dense.

    If nothing was parsed but ``text`` is non-blank, the whole text lands in
    a single "Content" chapter with a "Main Content" section.
    """
    trees: list[ChapterTree] = []

    for rule_section in sections:
        blocks: list[tuple[str, str, str, list[str] | None]] = [
            (rule_section.title, rule_section.id, rule_section.content, None)
        ]
        blocks.extend(
            (sub.title, sub.id, sub.content, sub.keywords) for sub in rule_section.subsections
        )
        tree = _build_chapter(
            document_id,
            len(trees),
            rule_section.title,
            rule_section.id,
            blocks,
            min_entry_chars,
            chapter_number=rule_section.chapter_number,
            part=rule_section.part,
            keywords=rule_section.keywords,
        )
        if tree is not None:
            trees.append(tree)

    if not trees and text and text.strip():
        base = slugify(f"{source or document_id}-{FALLBACK_CHAPTER_TITLE}")
        tree = _build_chapter(
            document_id,
            0,
            FALLBACK_CHAPTER_TITLE,
            base,
            [(FALLBACK_SECTION_TITLE, f"{base}-main-content", text.strip(), None)],
            min_entry_chars,
        )
        if tree is not None:
            trees.append(tree)

    return trees
