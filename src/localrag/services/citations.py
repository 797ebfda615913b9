"""Post-processing of generated answers: cleanup and citation extraction."""

from __future__ import annotations

import re
from typing import List

from localrag.models import Citation

_ITALIC = re.compile(r"(^|\s)[*_]([^*_]+)[*_](\s|$)", re.MULTILINE)
_NUMBERED_ITEM = re.compile(r"^\d+\.\s+(.+)$")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")
_LIST_PREFIXES = ("• ", "* ", "- ", "+ ")
_CHAT_MARKERS = ("<|im_end|>", "<|im_start|>", "<|endoftext|>")

_ACCORDING_TO = re.compile(r"(?i)according to \[([^\]]+)\](?: \((?:chunk|page) (\d+)\))?")
_BRACKETED_FILE = re.compile(r"\[([^\]]+\.(?:pdf|docx|txt|md))\]")


def strip_chat_markers(text: str) -> str:
    for marker in _CHAT_MARKERS:
        text = text.replace(marker, "")
    return text.strip()


def clean_response(response: str) -> str:
    """Turn model output into plain paragraphs.

    Markdown emphasis and list markers are dropped, runs of blank lines are
    collapsed to one, and leaked chat-template markers are removed.
    """

    cleaned = strip_chat_markers(response).replace("**", "")
    cleaned = _ITALIC.sub(r"\1\2\3", cleaned)
    lines = []
    for line in cleaned.splitlines():
        stripped = line.strip()
        for prefix in _LIST_PREFIXES:
            if stripped.startswith(prefix):
                stripped = stripped[len(prefix) :]
                break
        else:
            numbered = _NUMBERED_ITEM.match(stripped)
            if numbered:
                stripped = numbered.group(1)
        lines.append(stripped)
    cleaned = _EXTRA_NEWLINES.sub("\n\n", "\n".join(lines))
    return cleaned.strip()


def parse_citations(text: str) -> List[Citation]:
    """Find document references such as ``According to [report.pdf] (page 5)``.

    Bare ``[name.pdf]`` style references are picked up too. The result is
    sorted by document name with exact duplicates removed.
    """

    citations: List[Citation] = []
    for match in _ACCORDING_TO.finditer(text):
        number = int(match.group(2)) if match.group(2) else None
        citations.append(Citation(document_name=match.group(1), chunk_index=number, page_number=number))
    named = {citation.document_name for citation in citations}
    for match in _BRACKETED_FILE.finditer(text):
        name = match.group(1)
        if name not in named:
            named.add(name)
            citations.append(Citation(document_name=name))
    citations.sort(key=lambda citation: citation.document_name)
    unique: List[Citation] = []
    for citation in citations:
        if not unique or unique[-1] != citation:
            unique.append(citation)
    return unique


__all__ = ["clean_response", "parse_citations", "strip_chat_markers"]
