"""Routing classifier: decide where a piece of free text belongs.

A pure function over an ordered rule table. GitHub rules are checked first,
then Notion rules; anything else stays local as a low-confidence observation.
Nothing here touches the store or the network.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Pattern, Sequence

from kodo.types import Category, Confidence

ABBREVIATIONS = frozenset(
    {"e.g", "i.e", "etc", "vs", "cf", "approx", "mr", "mrs", "ms", "dr", "inc", "no", "fig"}
)

_BOUNDARY_RE = re.compile(r"([.!?]+)([\"')\]]*)(\s+)")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")


def split_sentences(text: str) -> List[str]:
    """Split text at sentence boundaries, keeping abbreviations intact."""
    sentences = []
    for paragraph in _PARAGRAPH_RE.split(text or ""):
        paragraph = " ".join(paragraph.split())
        start = 0
        for match in _BOUNDARY_RE.finditer(paragraph):
            last_word = paragraph[start : match.start()].rsplit(" ", 1)[-1].lower()
            if match.group(1) == "." and (
                last_word in ABBREVIATIONS or (len(last_word) == 1 and last_word.isalpha())
            ):
                continue
            sentence = paragraph[start : match.end(2)].strip()
            if sentence:
                sentences.append(sentence)
            start = match.end()
        tail = paragraph[start:].strip()
        if tail:
            sentences.append(tail)
    return sentences


class Destination(str, Enum):
    GITHUB = "github"
    NOTION = "notion"
    LOCAL = "local"


@dataclass(frozen=True)
class RoutingRule:
    """One pattern in the routing table; first match wins."""

    name: str
    destination: Destination
    pattern: Pattern[str]
    label: Optional[str] = None


def _rule(name: str, destination: Destination, pattern: str, label: Optional[str] = None) -> RoutingRule:
    return RoutingRule(name, destination, re.compile(pattern, re.IGNORECASE), label)


DEFAULT_RULES: Sequence[RoutingRule] = (
    _rule(
        "github-bug",
        Destination.GITHUB,
        r"\b(bugs?|crash(es|ed|ing)?|errors?|exceptions?|broken|fails?|failing|failed"
        r"|regression|stack ?trace|traceback|doesn't work|does not work)\b",
        label="bug",
    ),
    _rule(
        "github-feature",
        Destination.GITHUB,
        r"\b(feature request|enhancement|add support|should support|would be nice"
        r"|implement|pull request|PR ?#\d+|issue ?#\d+)\b",
        label="enhancement",
    ),
    _rule(
        "notion-docs",
        Destination.NOTION,
        r"\b(docs?|documentation|document|specification|meeting notes|roadmap"
        r"|wiki|runbook|onboarding|how-?to guide)\b",
        label="docs",
    ),
)


@dataclass
class Route:
    destination: Destination
    text: str
    category: Optional[Category] = None
    confidence: Optional[Confidence] = None
    label: Optional[str] = None
    rule: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "destination": self.destination.value,
            "text": self.text,
            "category": self.category.value if self.category else None,
            "confidence": self.confidence.value if self.confidence else None,
            "label": self.label,
            "rule": self.rule,
        }


@dataclass
class RoutingResult:
    routes: List[Route] = field(default_factory=list)

    @property
    def destinations(self) -> List[Destination]:
        """Distinct destinations in first-seen order."""
        seen: List[Destination] = []
        for route in self.routes:
            if route.destination not in seen:
                seen.append(route.destination)
        return seen


def classify(text: str, rules: Sequence[RoutingRule] = DEFAULT_RULES) -> Route:
    for rule in rules:
        if rule.pattern.search(text):
            return Route(rule.destination, text, label=rule.label, rule=rule.name)
    return Route(
        Destination.LOCAL,
        text,
        category=Category.OBSERVATION,
        confidence=Confidence.LOW,
        rule="default",
    )


def route(text: str, split: bool = False, rules: Sequence[RoutingRule] = DEFAULT_RULES) -> RoutingResult:
    """Classify `text`, or each of its sentences when `split` is set."""
    text = (text or "").strip()
    pieces = split_sentences(text) if split else [text]
    if not pieces:
        pieces = [text]
    return RoutingResult([classify(piece, rules) for piece in pieces])
