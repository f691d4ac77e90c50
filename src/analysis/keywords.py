"""
Keyword handling for feedback text.

Two concerns live here: the urgency keyword boost applied during severity
normalization, and the frequency-based keyword extraction run at ingestion.
"""

import re
from collections import Counter
from typing import Dict, List


# Urgency terms and the severity they add. Only the strongest match counts.
KEYWORD_WEIGHTS: Dict[str, int] = {
    # Critical
    "crash": 40,
    "panic": 40,
    "fatal": 40,
    "data loss": 40,
    "security": 40,
    "breach": 40,
    "emergency": 40,
    "critical": 30,

    # High
    "error": 20,
    "exception": 20,
    "fail": 20,
    "timeout": 20,
    "urgent": 20,
    "slow": 15,
    "stuck": 15,
    "broken": 15,
    "bug": 10,

    # Medium
    "issue": 5,
    "problem": 5,
    "weird": 5,
}

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare",
    "ought", "used", "to", "of", "in", "for", "on", "with", "at", "by",
    "from", "as", "into", "through", "during", "before", "after", "above",
    "below", "between", "under", "again", "further", "then", "once", "here",
    "there", "when", "where", "why", "how", "all", "each", "few", "more",
    "most", "other", "some", "such", "no", "nor", "not", "only", "own",
    "same", "so", "than", "too", "very", "just", "and", "but", "if", "or",
    "because", "until", "while", "this", "that", "these", "those", "it", "its",
})

MAX_EXTRACTED_KEYWORDS = 10


def keyword_boost(text: str) -> int:
    """
    Return the weight of the strongest urgency keyword found in text.

    Matching is a case-insensitive substring check, so "failed" counts as
    "fail". Several matches never add up: "crash" plus "issue" is still 40.

    Args:
        text: Raw feedback content

    Returns:
        Highest matching weight, or 0 when nothing matches
    """
    if not text:
        return 0

    lowered = text.lower()
    return max(
        (weight for keyword, weight in KEYWORD_WEIGHTS.items() if keyword in lowered),
        default=0,
    )


def extract_keywords(content: str, limit: int = MAX_EXTRACTED_KEYWORDS) -> List[str]:
    """
    Pick the most frequent meaningful words of a piece of feedback.

    Args:
        content: Raw feedback content
        limit: Maximum number of keywords returned

    Returns:
        Keywords ordered by frequency (first occurrence breaks ties)
    """
    words = re.sub(r"[^a-z0-9\s]", " ", content.lower()).split()
    counts = Counter(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    # Counter preserves insertion order, and most_common is a stable sort
    return [word for word, _ in counts.most_common(limit)]
