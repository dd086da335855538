"""Extraction engine: turn markdown documents and session notes into entries.

Documents are split into heading-delimited sections of paragraphs and list
items. Each block is classified by an ordered rule table: sentence rules look
at individual sentences, heading rules at the enclosing headings. Candidates
are deduplicated against the store before a single atomic batch is written.
"""

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import List, Optional, Pattern, Sequence, Set, Tuple, Union

from kodo.errors import AmbiguousSectionError, ParseFailureError
from kodo.routing import split_sentences
from kodo.search.query import QueryEngine
from kodo.types import Category, Confidence, Entry, Origin

logger = logging.getLogger(__name__)

OPEN_QUESTIONS_HEADING = "open questions"
MAX_TITLE_LENGTH = 80

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.*)$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


# === Parsing ===


@dataclass
class Block:
    kind: str  # paragraph or list_item
    text: str
    line: int


@dataclass
class Section:
    heading: Optional[str]
    level: int
    line: int
    parents: List[str] = field(default_factory=list)  # enclosing headings, outermost first
    blocks: List[Block] = field(default_factory=list)

    @property
    def headings(self) -> List[str]:
        """This section's heading followed by its ancestors, innermost first."""
        chain = list(reversed(self.parents))
        if self.heading:
            chain.insert(0, self.heading)
        return chain


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-")


def parse_markdown(text: str, source: str = "<text>") -> List[Section]:
    """Split markdown into sections, skipping front matter and code fences."""
    lines = text.splitlines()
    sections = [Section(heading=None, level=0, line=1)]
    stack: List[Tuple[int, str]] = []
    paragraph: List[str] = []
    paragraph_line = 0
    fence: Optional[Tuple[str, int]] = None

    def flush() -> None:
        nonlocal paragraph
        if paragraph:
            sections[-1].blocks.append(Block("paragraph", " ".join(paragraph), paragraph_line))
            paragraph = []

    start = 0
    if lines and lines[0].strip() == "---":
        for i in range(1, len(lines)):
            if lines[i].strip() in ("---", "..."):
                start = i + 1
                break
        else:
            raise ParseFailureError(source, "front matter is never closed", line=1)

    for line_no, line in enumerate(lines[start:], start=start + 1):
        fence_match = _FENCE_RE.match(line)
        if fence is not None:
            if fence_match and fence_match.group(1) == fence[0]:
                fence = None
            continue
        if fence_match:
            flush()
            fence = (fence_match.group(1), line_no)
            continue

        heading = _HEADING_RE.match(line)
        if heading:
            flush()
            level = len(heading.group(1))
            title = heading.group(2).strip()
            while stack and stack[-1][0] >= level:
                stack.pop()
            sections.append(
                Section(heading=title, level=level, line=line_no, parents=[h for _, h in stack])
            )
            stack.append((level, title))
            continue

        if not line.strip():
            flush()
            continue

        item = _LIST_ITEM_RE.match(line)
        if item:
            flush()
            sections[-1].blocks.append(Block("list_item", item.group(1).strip(), line_no))
            continue

        blocks = sections[-1].blocks
        if not paragraph and line.startswith((" ", "\t")) and blocks and blocks[-1].kind == "list_item":
            blocks[-1].text += " " + line.strip()
            continue
        if not paragraph:
            paragraph_line = line_no
        paragraph.append(line.strip())

    if fence is not None:
        raise ParseFailureError(source, f"code fence {fence[0]} is never closed", line=fence[1])
    flush()
    return [s for s in sections if s.blocks or s.heading]


# === Rules ===


class RuleKind(str, Enum):
    SENTENCE = "sentence"  # matched against each sentence of a block
    HEADING = "heading"  # matched against the enclosing headings


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    kind: RuleKind
    pattern: Pattern[str]
    category: Category
    confidence: Confidence


def _rule(name: str, kind: RuleKind, pattern: str, category: Category, confidence: Confidence) -> ExtractionRule:
    return ExtractionRule(name, kind, re.compile(pattern, re.IGNORECASE), category, confidence)


DEFAULT_RULES: Sequence[ExtractionRule] = (
    _rule(
        "decision",
        RuleKind.SENTENCE,
        r"\b(decided|decision was|we will use|we'll use|we are going with|going with|opted for)\b"
        r"|\bchose\b.+\bover\b",
        Category.DECISIONS,
        Confidence.HIGH,
    ),
    _rule(
        "debugging",
        RuleKind.SENTENCE,
        r"\b(root cause|fixed by|the bug was|workaround|was caused by)\b",
        Category.DEBUGGING,
        Confidence.MEDIUM,
    ),
    _rule(
        "architecture",
        RuleKind.HEADING,
        r"\b(architecture|patterns?|design)\b",
        Category.ARCHITECTURE,
        Confidence.MEDIUM,
    ),
    _rule("testing", RuleKind.HEADING, r"\b(tests?|testing)\b", Category.TESTING, Confidence.MEDIUM),
    _rule(
        "code-style",
        RuleKind.HEADING,
        r"\b(code[- ]style|style guide|conventions?|formatting|linting)\b",
        Category.CODE_STYLE,
        Confidence.MEDIUM,
    ),
    _rule(
        "database",
        RuleKind.HEADING,
        r"\b(databases?|schemas?|migrations?|sql)\b",
        Category.DATABASE,
        Confidence.MEDIUM,
    ),
    _rule("api", RuleKind.HEADING, r"\b(apis?|endpoints?|graphql|rest)\b", Category.API, Confidence.MEDIUM),
    _rule(
        "workflows",
        RuleKind.HEADING,
        r"\b(workflows?|process|deploy(ment)?|releases?|ci)\b",
        Category.WORKFLOWS,
        Confidence.MEDIUM,
    ),
    _rule(
        "debugging-heading",
        RuleKind.HEADING,
        r"\b(debugging|troubleshooting|gotchas?|known issues)\b",
        Category.DEBUGGING,
        Confidence.MEDIUM,
    ),
    _rule(
        "domain",
        RuleKind.HEADING,
        r"\b(domain|business rules?|glossary)\b",
        Category.DOMAIN,
        Confidence.MEDIUM,
    ),
)

LEARNING_MARKERS = re.compile(
    r"\b(learned|lessons?|turns out|gotcha|always|never|remember to|note to self)\b", re.IGNORECASE
)
RULE_MARKERS = re.compile(r"\b(always|never|must)\b", re.IGNORECASE)


@dataclass
class Candidate:
    """A proposed entry, before deduplication."""

    category: Category
    confidence: Confidence
    title: str
    body: str
    source: str
    line: int
    rule: str
    tags: Set[str] = field(default_factory=set)
    origin: Origin = Origin.EXTRACT

    def to_entry(self) -> Entry:
        return Entry(
            id="",
            category=self.category,
            title=self.title,
            body=self.body,
            confidence=self.confidence,
            tags=set(self.tags),
            origin=self.origin,
        )

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.body}"


def make_title(text: str, limit: int = MAX_TITLE_LENGTH) -> str:
    text = " ".join(text.split()).rstrip(".")
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return cut.rstrip(",;:") + "..."


def similarity(a: str, b: str) -> float:
    """Character-level similarity ratio between two texts."""
    return SequenceMatcher(None, a.lower(), b.lower()).ratio()


@dataclass
class ExtractionReport:
    source: str
    candidates: List[Candidate] = field(default_factory=list)
    created: List[Entry] = field(default_factory=list)
    touched: List[str] = field(default_factory=list)  # existing entries matched as duplicates
    skipped: List[Candidate] = field(default_factory=list)  # duplicates within the batch
    dry_run: bool = False


class ExtractionEngine:
    """Classifies documents and writes deduplicated candidates to the store."""

    def __init__(
        self,
        store,
        query_engine: Optional[QueryEngine] = None,
        rules: Sequence[ExtractionRule] = DEFAULT_RULES,
    ):
        self.store = store
        self.config = store.config
        self.query_engine = query_engine or QueryEngine(store)
        self.rules = list(rules)

    # === Classification ===

    def _heading_rules(self, heading: str) -> List[ExtractionRule]:
        return [r for r in self.rules if r.kind is RuleKind.HEADING and r.pattern.search(heading)]

    def _section_rule(self, section: Section, source: str, strict: bool) -> Optional[ExtractionRule]:
        for heading in section.headings:
            matches = self._heading_rules(heading)
            if not matches:
                continue
            categories = sorted({r.category.value for r in matches})
            if strict and len(categories) > 1:
                raise AmbiguousSectionError(source, heading, categories, section.line)
            if len(categories) > 1:
                logger.debug("Heading %r matches %s, using %s", heading, categories, matches[0].category.value)
            return matches[0]
        return None

    def classify(self, sections: List[Section], source: str, strict: bool = False) -> List[Candidate]:
        """Apply the rule table to parsed sections."""
        sentence_rules = [r for r in self.rules if r.kind is RuleKind.SENTENCE]
        source_tag = f"source:{Path(source).name}"
        candidates = []
        for section in sections:
            open_questions = any(h.strip().lower() == OPEN_QUESTIONS_HEADING for h in section.headings)
            heading_rule = self._section_rule(section, source, strict)
            tags = {source_tag}
            if section.heading and slugify(section.heading):
                tags.add(slugify(section.heading))
            for block in section.blocks:
                if open_questions and block.kind == "list_item":
                    continue
                found = False
                for sentence in split_sentences(block.text):
                    rule = next((r for r in sentence_rules if r.pattern.search(sentence)), None)
                    if rule is None:
                        continue
                    found = True
                    candidates.append(
                        Candidate(
                            category=rule.category,
                            confidence=rule.confidence,
                            title=make_title(sentence),
                            body=sentence,
                            source=source,
                            line=block.line,
                            rule=rule.name,
                            tags=set(tags),
                        )
                    )
                if found or heading_rule is None:
                    continue
                sentences = split_sentences(block.text)
                candidates.append(
                    Candidate(
                        category=heading_rule.category,
                        confidence=heading_rule.confidence,
                        title=make_title(sentences[0] if sentences else block.text),
                        body=block.text,
                        source=source,
                        line=block.line,
                        rule=heading_rule.name,
                        tags=set(tags),
                    )
                )
        return candidates

    def reflection_candidates(self, text: str, source: str = "<reflect>") -> List[Candidate]:
        """Learning sentences from free-form session notes."""
        heading_rules = [r for r in self.rules if r.kind is RuleKind.HEADING]
        sentence_rules = [r for r in self.rules if r.kind is RuleKind.SENTENCE]
        candidates = []
        for section in parse_markdown(text, source):
            for block in section.blocks:
                for sentence in split_sentences(block.text):
                    if not LEARNING_MARKERS.search(sentence):
                        continue
                    rule = next((r for r in sentence_rules if r.pattern.search(sentence)), None)
                    if rule is None:
                        rule = next((r for r in heading_rules if r.pattern.search(sentence)), None)
                    category = rule.category if rule else Category.OBSERVATION
                    confidence = Confidence.MEDIUM if RULE_MARKERS.search(sentence) else Confidence.LOW
                    candidates.append(
                        Candidate(
                            category=category,
                            confidence=confidence,
                            title=make_title(sentence),
                            body=sentence,
                            source=source,
                            line=block.line,
                            rule=rule.name if rule else "learning",
                            tags={"reflect"},
                            origin=Origin.REFLECT,
                        )
                    )
        return candidates

    # === Dedup and write ===

    def find_duplicate(self, candidate: Candidate) -> Tuple[Optional[str], float]:
        """Best existing entry for a candidate among the top query hits."""
        page = self.query_engine.query(candidate.title, limit=self.config.dedup_candidates)
        best_id, best = None, 0.0
        for hit in page.hits:
            score = similarity(candidate.text, f"{hit.entry.title}\n{hit.entry.body}")
            if score > best:
                best_id, best = hit.entry.id, score
        if best > self.config.dedup_threshold:
            return best_id, best
        return None, best

    def _write(self, report: ExtractionReport) -> ExtractionReport:
        threshold = self.config.dedup_threshold
        staged: List[Candidate] = []
        plan: List[Tuple[Candidate, Optional[str]]] = []
        for candidate in report.candidates:
            if not candidate.title:
                report.skipped.append(candidate)
                continue
            if any(similarity(candidate.text, other.text) > threshold for other in staged):
                report.skipped.append(candidate)
                continue
            duplicate_id, score = self.find_duplicate(candidate)
            if duplicate_id is not None:
                logger.debug("Candidate %r duplicates %s (%.2f)", candidate.title, duplicate_id, score)
                if duplicate_id not in report.touched:
                    report.touched.append(duplicate_id)
                    plan.append((candidate, duplicate_id))
                else:
                    report.skipped.append(candidate)
                continue
            staged.append(candidate)
            plan.append((candidate, None))

        if report.dry_run:
            report.created = [c.to_entry() for c, existing in plan if existing is None]
            return report

        with self.store.batch() as batch:
            created_ids = []
            for candidate, existing_id in plan:
                if existing_id is None:
                    created_ids.append(batch.put(candidate.to_entry(), automated=True))
                    continue
                existing = batch.get(existing_id)
                if existing is not None and candidate.confidence.rank > existing.confidence.rank:
                    existing.confidence = candidate.confidence
                    batch.put(existing, automated=True)
                else:
                    batch.touch(existing_id)
        report.created = [self.store.get(entry_id) for entry_id in created_ids]
        logger.info(
            "Extracted from %s: %d created, %d touched, %d skipped",
            report.source,
            len(report.created),
            len(report.touched),
            len(report.skipped),
        )
        return report

    # === Entry points ===

    def extract(
        self,
        path: Optional[Union[str, Path]] = None,
        text: Optional[str] = None,
        source: Optional[str] = None,
        dry_run: bool = False,
        strict: bool = False,
    ) -> ExtractionReport:
        """Extract learnings from a markdown file (or text) as one atomic batch.

        Raises:
            ParseFailureError: unreadable input or unterminated structure;
                nothing is written.
            AmbiguousSectionError: in strict mode, a heading matches more
                than one category.
        """
        if path is not None:
            source = source or str(path)
            try:
                raw = Path(path).read_bytes()
            except OSError as e:
                raise ParseFailureError(source, f"cannot read file ({e.strerror or e})") from e
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ParseFailureError(source, f"not valid UTF-8 at byte {e.start}") from e
        if text is None:
            raise ValueError("extract() needs a path or text")
        source = source or "<text>"

        sections = parse_markdown(text, source)
        report = ExtractionReport(source=source, dry_run=dry_run)
        report.candidates = self.classify(sections, source, strict=strict)
        return self._write(report)

    def reflect(self, text: str, dry_run: bool = False) -> ExtractionReport:
        report = ExtractionReport(source="<reflect>", dry_run=dry_run)
        report.candidates = self.reflection_candidates(text)
        return self._write(report)
