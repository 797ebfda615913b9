"""Heuristics that spot a model stuck in a loop while it is still generating.

Each detector is a pure function over the response produced so far. They are
cheap enough to run every few tokens; ``check_degeneracy`` applies the length
gates and returns the first reason that fires.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

from localrag.models import StopReason

FILLER_PHRASES = (
    "please let me know",
    "i'm happy to help",
    "i'm here to help",
    "feel free to ask",
    "if you have any",
    "thank you for your patience",
    "is there anything else",
    "i look forward to",
    "please feel free",
    "let me know if you",
    "i hope this helps",
)
PROMPT_ECHO_MARKERS = ("<|im_start|>", "<|im_end|>")
_SENTENCE_END = re.compile(r"[.!?]")


@dataclass(frozen=True)
class DegeneracyConfig:
    """Thresholds for the degeneracy detectors."""

    check_interval: int = 10
    echo_min_chars: int = 200
    block_min_chars: int = 300
    filler_min_chars: int = 500
    sentence_min_chars: int = 400
    filler_threshold: int = 4
    min_long_sentences: int = 6
    long_sentence_chars: int = 50
    normalized_sentence_chars: int = 40
    sentence_repeats: int = 3
    block_windows: tuple[int, ...] = (100, 150, 200)
    similarity_window_chars: int = 100
    similarity_min_chars: int = 40
    similarity_threshold: float = 0.7
    similarity_strikes: int = 3


def similar_text_ratio(first: str, second: str) -> float:
    """Jaccard similarity of the whitespace-separated word sets."""

    left = set(first.split())
    right = set(second.split())
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def detect_prompt_echo(text: str, markers: Iterable[str] = PROMPT_ECHO_MARKERS) -> bool:
    return any(marker in text for marker in markers)


def detect_block_repetition(text: str, windows: Iterable[int] = (100, 150, 200)) -> bool:
    """True when the trailing block of some window size already occurs earlier."""

    length = len(text)
    if length < 200:
        return False
    for window in windows:
        if length < window * 2:
            continue
        if text[-window:] in text[:-window]:
            return True
    return False


def detect_filler_loop(text: str, threshold: int = 4, phrases: Iterable[str] = FILLER_PHRASES) -> bool:
    lowered = text.lower()
    return sum(lowered.count(phrase) for phrase in phrases) >= threshold


def detect_sentence_repetition(
    text: str,
    repeats: int = 3,
    *,
    min_sentences: int = 6,
    long_sentence_chars: int = 50,
    normalized_chars: int = 40,
) -> bool:
    sentences = [part.strip() for part in _SENTENCE_END.split(text)]
    sentences = [sentence for sentence in sentences if len(sentence) > long_sentence_chars]
    if len(sentences) < min_sentences:
        return False
    counts = Counter(" ".join(sentence.lower().split()) for sentence in sentences)
    return any(count >= repeats for sentence, count in counts.items() if len(sentence) > normalized_chars)


def check_degeneracy(text: str, config: DegeneracyConfig | None = None) -> Optional[StopReason]:
    """Return the first degeneracy reason that applies to ``text``, if any."""

    config = config or DegeneracyConfig()
    length = len(text)
    if length <= config.echo_min_chars:
        return None
    if detect_prompt_echo(text):
        return StopReason.PROMPT_ECHO
    if length > config.block_min_chars and detect_block_repetition(text, config.block_windows):
        return StopReason.BLOCK_REPETITION
    if length > config.filler_min_chars and detect_filler_loop(text, config.filler_threshold):
        return StopReason.FILLER_LOOP
    if length > config.sentence_min_chars and detect_sentence_repetition(
        text,
        config.sentence_repeats,
        min_sentences=config.min_long_sentences,
        long_sentence_chars=config.long_sentence_chars,
        normalized_chars=config.normalized_sentence_chars,
    ):
        return StopReason.SENTENCE_REPETITION
    return None


class SimilarityTracker:
    """Counts consecutive windows whose word sets overlap too much.

    The latest ``window`` characters are compared with the ``window``
    characters before them; ``strikes`` consecutive comparisons above the
    threshold mean the response is looping.
    """

    def __init__(self, config: DegeneracyConfig | None = None) -> None:
        self._config = config or DegeneracyConfig()
        self.strikes = 0
        self.last_ratio = 0.0

    def update(self, text: str) -> bool:
        window = self._config.similarity_window_chars
        if len(text) <= window * 2:
            return False
        recent = text[-window:]
        earlier = text[-window * 2 : -window]
        if len(recent) < self._config.similarity_min_chars or len(earlier) < self._config.similarity_min_chars:
            return False
        self.last_ratio = similar_text_ratio(earlier, recent)
        if self.last_ratio > self._config.similarity_threshold:
            self.strikes += 1
        else:
            self.strikes = 0
        return self.strikes >= self._config.similarity_strikes


__all__ = [
    "DegeneracyConfig",
    "FILLER_PHRASES",
    "PROMPT_ECHO_MARKERS",
    "SimilarityTracker",
    "check_degeneracy",
    "detect_block_repetition",
    "detect_filler_loop",
    "detect_prompt_echo",
    "detect_sentence_repetition",
    "similar_text_ratio",
]
