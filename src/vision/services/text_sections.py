from __future__ import annotations

"""Tolerant extraction of labelled sections from free-form model output.

Nothing here raises on malformed text: a missing label yields an empty value
and callers decide on their own fallback.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

MAX_FACTS = 3

_LABEL_DECORATION = re.compile(r"^[\s#>*_`]+|[\s*_`]+$")
_LIST_MARKER = re.compile(r"^\s*(?:[-•+]|\*(?!\*)|\d{1,2}[.)](?=\s)|\[\d{1,2}\])\s*")
# "#tag" but not a markdown heading such as "# Title"
_KEYWORD_TAG = re.compile(r"^#[^\s#]")


@dataclass
class ResearchPlan:
    facts: List[str] = field(default_factory=list)
    image_prompt: str = ""

    @property
    def has_prompt(self) -> bool:
        return bool(self.image_prompt)


def _match_label(line: str, labels: Iterable[str]) -> Optional[Tuple[str, str]]:
    """Return ``(label, remainder)`` when ``line`` opens a known section."""
    cleaned = _LABEL_DECORATION.sub("", line)
    upper = cleaned.upper()
    for label in labels:
        if not upper.startswith(label):
            continue
        rest = cleaned[len(label):]
        rest = rest.lstrip("*_` ")
        if rest.startswith(":"):
            return label, rest[1:].lstrip("*_` ").strip()
        if not rest.strip():
            return label, ""
    return None


def _inline_labels(labels: List[str]) -> "re.Pattern[str]":
    alternatives = "|".join(re.escape(label) for label in sorted(labels, key=len, reverse=True))
    return re.compile(rf"(?<!\w)[*_`]*(?:{alternatives})[*_`]*\s*:", re.IGNORECASE)


def _split_inline(line: str, pattern: "re.Pattern[str]") -> List[str]:
    """Break ``line`` before every ``LABEL:`` that follows other text."""
    pieces: List[str] = []
    start = 0
    for match in pattern.finditer(line):
        if match.start() > start and line[start:match.start()].strip():
            pieces.append(line[start:match.start()])
            start = match.start()
    pieces.append(line[start:])
    return pieces


def extract_sections(text: Optional[str], labels: Iterable[str]) -> Dict[str, str]:
    """Split ``text`` into the sections introduced by ``labels``.

    A section runs from its label line to the next known label or the end of
    the text. Labels are matched case-insensitively at the start of a line,
    ignoring markdown decoration such as ``**FACTS:**`` or ``## FACTS``.
    A label followed by a colon also opens a section mid-line, so
    ``- fact IMAGE_PROMPT: x`` ends the facts and starts the prompt.
    Labels that never appear map to ``""``.
    """
    wanted = [label.upper() for label in labels]
    found: Dict[str, List[str]] = {}
    current: Optional[str] = None
    if not isinstance(text, str):
        text = ""
    inline = _inline_labels(wanted) if wanted else None
    for raw in text.splitlines():
        for line in _split_inline(raw, inline) if inline else [raw]:
            hit = _match_label(line, wanted)
            if hit is not None:
                current, remainder = hit
                found.setdefault(current, [])
                if remainder:
                    found[current].append(remainder)
                continue
            if current is not None:
                found[current].append(line)
    return {label: "\n".join(found.get(label, [])).strip() for label in wanted}


def parse_list(section: Optional[str], max_items: Optional[int] = None) -> List[str]:
    items: List[str] = []
    for raw in (section or "").splitlines():
        item = _LIST_MARKER.sub("", raw, count=1).strip()
        if not item:
            continue
        items.append(item)
        if max_items is not None and len(items) >= max_items:
            break
    return items


def parse_research_plan(text: Optional[str], max_facts: int = MAX_FACTS) -> ResearchPlan:
    sections = extract_sections(text, ("FACTS", "IMAGE_PROMPT"))
    return ResearchPlan(
        facts=parse_list(sections["FACTS"], max_facts),
        image_prompt=sections["IMAGE_PROMPT"],
    )


def split_keyword_header(text: Optional[str]) -> Tuple[str, str]:
    """Split a leading ``#kw1 #kw2`` line from the body that follows it.

    Returns ``(keywords, body)``; when the first non-blank line carries no
    ``#`` tags the whole text is the body.
    """
    if not isinstance(text, str):
        return "", ""
    lines = text.strip().splitlines()
    if not lines:
        return "", ""
    first = lines[0].strip()
    if not _KEYWORD_TAG.match(first):
        return "", text.strip()
    return first, "\n".join(lines[1:]).strip()
