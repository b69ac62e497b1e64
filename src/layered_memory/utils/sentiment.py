"""
Turn-level sentiment scoring for the sentiment layer.

VADER gives a compound score for English text with negation and degree
handling.  A small bilingual keyword lexicon covers the Spanish vocabulary
VADER does not know.  When both signal, the score is their mean.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

POSITIVE: frozenset[str] = frozenset(
    {
        "bien", "genial", "excelente", "feliz", "contento", "satisfecho", "gracias",
        "awesome", "great", "good", "happy", "love", "amazing", "nice",
    }
)

NEGATIVE: frozenset[str] = frozenset(
    {
        "mal", "terrible", "triste", "enojado", "frustrado", "ansioso", "estresado",
        "bad", "angry", "sad", "annoyed", "problem", "issue", "fail", "broken",
    }
)

LABEL_THRESHOLD = 0.2

_STRIP_RE = re.compile(r"[^a-z0-9áéíóúñü\s]")

_analyzer: SentimentIntensityAnalyzer | None = None


def _get_analyzer() -> SentimentIntensityAnalyzer:
    global _analyzer  # noqa: PLW0603
    if _analyzer is None:
        _analyzer = SentimentIntensityAnalyzer()
    return _analyzer


@dataclass(frozen=True, slots=True)
class SentimentScore:
    score: float  # -1.0 (negative) to 1.0 (positive)
    label: str
    matches: int


def tokenize(text: str) -> list[str]:
    return _STRIP_RE.sub(" ", (text or "").lower()).split()


def label_for(score: float) -> str:
    if score >= LABEL_THRESHOLD:
        return "positive"
    if score <= -LABEL_THRESHOLD:
        return "negative"
    return "neutral"


def score_sentiment(text: str) -> SentimentScore:
    """Score *text*; ``matches`` counts tokens either lexicon recognized."""
    tokens = tokenize(text)
    if not tokens:
        return SentimentScore(0.0, "neutral", 0)

    pos = sum(1 for t in tokens if t in POSITIVE)
    neg = sum(1 for t in tokens if t in NEGATIVE)
    keyword_hits = pos + neg

    analyzer = _get_analyzer()
    vader_hits = sum(1 for t in tokens if t in analyzer.lexicon and t not in POSITIVE and t not in NEGATIVE)
    compound = analyzer.polarity_scores(text)["compound"] if vader_hits or keyword_hits else 0.0

    if keyword_hits and compound:
        score = ((pos - neg) / keyword_hits + compound) / 2
    elif keyword_hits:
        score = (pos - neg) / keyword_hits
    else:
        score = compound
    score = max(-1.0, min(1.0, score))
    return SentimentScore(score, label_for(score), keyword_hits + vader_hits)
