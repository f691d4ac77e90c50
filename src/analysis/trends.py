"""Trend detection for clusters."""

from typing import Mapping, Optional, Sequence
import logging

from src.models.schemas import Cluster, FeedbackItem, Trend

logger = logging.getLogger(__name__)

MIN_TREND_ITEMS = 5
# Differences inside +/-10 are treated as noise
TREND_BAND = 10


def compute_trend(items: Sequence[FeedbackItem], current: str = Trend.STABLE.value) -> str:
    """
    Compare the mean severity of the newer half of items against the older half.

    Fewer than 5 items is too small a sample, so the current trend is kept.
    On odd counts the older half takes the extra item.
    """
    if len(items) < MIN_TREND_ITEMS:
        return current

    ordered = sorted(items, key=lambda item: item.created_at, reverse=True)
    midpoint = len(ordered) // 2
    recent, older = ordered[:midpoint], ordered[midpoint:]

    recent_avg = sum(i.normalized_severity for i in recent) / len(recent)
    older_avg = sum(i.normalized_severity for i in older) / len(older)
    diff = recent_avg - older_avg

    if diff > TREND_BAND:
        return Trend.RISING.value
    if diff < -TREND_BAND:
        return Trend.DECLINING.value
    return Trend.STABLE.value


def update_trend(cluster: Cluster, items_by_id: Mapping[str, FeedbackItem]) -> Cluster:
    """Return the cluster with its trend recomputed from its member items."""
    members = [items_by_id[fid] for fid in cluster.feedback_items if fid in items_by_id]
    trend = compute_trend(members, current=cluster.metrics.trend)
    if trend == cluster.metrics.trend:
        return cluster

    logger.info(f"Cluster {cluster.cluster_id} trend changed: {cluster.metrics.trend} -> {trend}")
    return cluster.model_copy(update={
        "metrics": cluster.metrics.model_copy(update={"trend": trend}),
    })
