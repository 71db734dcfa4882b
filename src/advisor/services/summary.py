from __future__ import annotations

import html
import re
from typing import List

import markdown as md


_HEADING_RE = re.compile(r"^#+[ \t]+(.*)$", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_MARKDOWN_PUNCT_RE = re.compile(r"[#*`]")
_TOPIC_SPLIT_RE = re.compile(r"[，。？！,?!]")

MAX_HEADINGS = 3
MAX_HIGHLIGHTS = 6
TOPIC_MAX_CHARS = 12
DEFAULT_TOPIC = "新话题"


def render_markdown(text: str) -> str:
    return md.markdown(text or "", extensions=["extra"])


def extract_topic(text: str) -> str:
    """Short label for a turn: the first clause, clipped to 12 characters."""
    topic = _TOPIC_SPLIT_RE.split(text or "", maxsplit=1)[0].strip()
    if len(topic) > TOPIC_MAX_CHARS:
        topic = topic[:TOPIC_MAX_CHARS] + "..."
    return topic or DEFAULT_TOPIC


def _headings(text: str) -> List[str]:
    return [m.group(1).strip() for m in _HEADING_RE.finditer(text)]


def _highlights(text: str) -> List[str]:
    seen: List[str] = []
    for m in _BOLD_RE.finditer(text):
        inner = m.group(1)
        if 1 < len(inner) < 20 and inner not in seen:
            seen.append(inner)
    return seen


def summarize(full_text: str) -> str:
    """Derive the insight-card markup for an answer.

    Headings win over bold spans, bold spans win over the plain-text lead.
    Pure: the same input always yields the same markup.
    """
    text = full_text or ""

    headings = _headings(text)
    if headings:
        items = "".join(f"<li>{html.escape(h)}</li>" for h in headings[:MAX_HEADINGS])
        return f'<ul class="insight-list">{items}</ul>'

    highlights = _highlights(text)
    if highlights:
        chips = "".join(
            f'<span class="keyword-highlight">{html.escape(t)}</span>' for t in highlights[:MAX_HIGHLIGHTS]
        )
        return f'<div class="insight-chips">{chips}</div>'

    clean = _MARKDOWN_PUNCT_RE.sub("", text)
    first_line = clean.split("\n")[0]
    if len(first_line) < 20:
        return html.escape(first_line)
    return html.escape(clean[:80]) + "..."
