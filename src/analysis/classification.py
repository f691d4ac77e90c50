"""
Classification orchestration: batch pending feedback through the
classifier and fold each result back into its item.
"""

from typing import List, Sequence, Tuple
import logging

from src.analysis.severity import round_half_up
from src.models.schemas import FeedbackItem, ClassificationResult

logger = logging.getLogger(__name__)

MAX_CLASSIFICATION_BATCH = 10

# Weight of the model's technical severity against the ingestion-time score
TECHNICAL_SEVERITY_WEIGHT = 0.7
EXISTING_SEVERITY_WEIGHT = 0.3

# Width of the feedback_items.summary column
SUMMARY_LENGTH = 1000


def blend_severity(current_severity: int, technical_severity: float) -> int:
    """
    Blend the classifier's technical severity into an item's severity.

    A technical severity of 0 means the model had no opinion, so the
    current severity is kept.
    """
    if technical_severity <= 0:
        return current_severity
    return round_half_up(
        technical_severity * TECHNICAL_SEVERITY_WEIGHT + current_severity * EXISTING_SEVERITY_WEIGHT
    )


def merge_keywords(existing: Sequence[str], new: Sequence[str]) -> List[str]:
    """Union of both keyword lists without duplicates."""
    return list(dict.fromkeys([*existing, *new]))


def apply_classification(item: FeedbackItem, result: ClassificationResult) -> FeedbackItem:
    """Return a copy of item updated with one classification result."""
    summary = result.summary or item.summary
    return item.model_copy(update={
        "feedback_type": result.feedback_type,
        "sentiment_score": result.sentiment_score,
        "normalized_severity": blend_severity(item.normalized_severity, result.technical_severity),
        "keywords": merge_keywords(item.keywords, result.keywords),
        "summary": summary[:SUMMARY_LENGTH] if summary else summary,
    })


def classify_items(
    items: Sequence[FeedbackItem],
    classifier,
    batch_size: int = MAX_CLASSIFICATION_BATCH,
) -> Tuple[List[FeedbackItem], List[str]]:
    """
    Classify items in sequential batches of at most 10.

    A batch whose classifier call raises is skipped: its items stay
    unclassified, the failure is recorded, and the next batch still runs.

    Args:
        items: Pending feedback items
        classifier: Object exposing classify_batch(items) -> List[ClassificationResult]
        batch_size: Items per classifier call (capped at 10)

    Returns:
        Tuple of (classified items in input order, error messages)
    """
    batch_size = max(1, min(batch_size, MAX_CLASSIFICATION_BATCH))
    classified: List[FeedbackItem] = []
    errors: List[str] = []

    total_batches = (len(items) + batch_size - 1) // batch_size
    for i in range(0, len(items), batch_size):
        batch = list(items[i:i + batch_size])
        batch_num = (i // batch_size) + 1
        logger.info(f"Classifying batch {batch_num}/{total_batches} ({len(batch)} items)")

        try:
            results = classifier.classify_batch(batch)
        except Exception as e:
            logger.error(f"Classification batch {batch_num} failed: {e}")
            errors.append(f"Classification batch {batch_num} failed: {e}")
            continue

        if len(results) != len(batch):
            # Results are aligned by position, a short answer cannot be trusted
            logger.error(
                f"Classification batch {batch_num} returned {len(results)} results for {len(batch)} items"
            )
            errors.append(f"Classification batch {batch_num} returned misaligned results")
            continue

        for item, result in zip(batch, results):
            classified.append(apply_classification(item, result))

    return classified, errors
