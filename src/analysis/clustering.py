"""
Cluster assembly and cluster metrics.

Items are grouped by a pluggable strategy. SingletonGrouping gives every
item its own cluster. SimilarityGrouping embeds the content and merges
near-duplicates with agglomerative clustering on cosine distance.
Metrics and priority are always recomputed from the member items.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from datetime import datetime, timezone
import logging

import numpy as np
from sklearn.cluster import AgglomerativeClustering

from src.analysis.classification import merge_keywords
from src.analysis.severity import round_half_up
from src.models.schemas import (
    Cluster,
    ClusterMetrics,
    ClusterPriority,
    ClusterSummary,
    FeedbackItem,
    FeedbackStatus,
    Trend,
)

logger = logging.getLogger(__name__)

# Inclusive lower bounds, checked from the top
PRIORITY_THRESHOLDS = (
    (90, ClusterPriority.CRITICAL),
    (75, ClusterPriority.HIGH),
    (50, ClusterPriority.MEDIUM),
)

AVG_SEVERITY_WEIGHT = 0.4
MAX_SEVERITY_WEIGHT = 0.6

DESCRIPTION_LENGTH = 500
TITLE_LENGTH = 200
PENDING_ANALYSIS = "Pending analysis"


def priority_for(aggregate_severity: int) -> str:
    for threshold, priority in PRIORITY_THRESHOLDS:
        if aggregate_severity >= threshold:
            return priority.value
    return ClusterPriority.LOW.value


def compute_aggregate_severity(avg_severity: float, max_severity: int) -> int:
    """Weighted toward the worst report so one severe outlier lifts the cluster."""
    return round_half_up(avg_severity * AVG_SEVERITY_WEIGHT + max_severity * MAX_SEVERITY_WEIGHT)


def compute_metrics(items: Sequence[FeedbackItem], trend: str = Trend.STABLE.value) -> Tuple[ClusterMetrics, float]:
    """
    Aggregate member items into cluster metrics.

    Returns:
        Tuple of (metrics, real-valued average severity)
    """
    severities = [item.normalized_severity for item in items]
    dates = [item.created_at for item in items]
    avg_severity = sum(severities) / len(severities)

    metrics = ClusterMetrics(
        total_items=len(items),
        avg_severity=round_half_up(avg_severity),
        max_severity=max(severities),
        sources=list(dict.fromkeys(item.source for item in items)),
        first_seen=min(dates),
        last_seen=max(dates),
        trend=trend,
    )
    return metrics, avg_severity


def recompute_cluster(
    cluster: Cluster,
    items_by_id: Mapping[str, FeedbackItem],
    now: Optional[datetime] = None,
) -> Cluster:
    """
    Recompute metrics, aggregate severity and priority of a cluster.

    Member ids missing from items_by_id are left out of the aggregation.
    A cluster with no resolvable members is returned unchanged.
    """
    members = [items_by_id[fid] for fid in cluster.feedback_items if fid in items_by_id]
    missing = len(cluster.feedback_items) - len(members)
    if missing:
        logger.warning(f"Cluster {cluster.cluster_id} references {missing} missing feedback items")
    if not members:
        return cluster

    metrics, avg_severity = compute_metrics(members, trend=cluster.metrics.trend)
    aggregate = compute_aggregate_severity(avg_severity, metrics.max_severity)

    return cluster.model_copy(update={
        "metrics": metrics,
        "aggregate_severity": aggregate,
        "priority": priority_for(aggregate),
        "updated_at": now or datetime.now(timezone.utc),
    })


# ---------------------------------------------------------------------------
# Grouping strategies
# ---------------------------------------------------------------------------

class SingletonGrouping:
    """One item, one cluster."""

    def group(self, items: Sequence[FeedbackItem]) -> List[List[FeedbackItem]]:
        return [[item] for item in items]


class SimilarityGrouping:
    """Group semantically similar items using content embeddings."""

    def __init__(self, embedder, distance_threshold: float = 0.25, max_chars: int = 2000):
        """
        Args:
            embedder: Object exposing embed_texts(texts) -> List[List[float]]
            distance_threshold: Cosine distance under which groups are merged
            max_chars: Content characters sent for embedding
        """
        self.embedder = embedder
        self.distance_threshold = distance_threshold
        self.max_chars = max_chars

    def group(self, items: Sequence[FeedbackItem]) -> List[List[FeedbackItem]]:
        if len(items) < 2:
            return [[item] for item in items]

        vectors = np.asarray(
            self.embedder.embed_texts([item.content[:self.max_chars] for item in items]),
            dtype=float,
        )
        clusterer = AgglomerativeClustering(
            n_clusters=None,
            distance_threshold=self.distance_threshold,
            metric="cosine",
            linkage="average",
        )
        labels = clusterer.fit_predict(vectors)

        groups: Dict[int, List[FeedbackItem]] = {}
        for item, label in zip(items, labels):
            groups.setdefault(int(label), []).append(item)

        logger.info(f"Grouped {len(items)} items into {len(groups)} similarity groups")
        return list(groups.values())


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class ClusterAssembler:
    """Turns freshly classified items into clusters."""

    def __init__(self, grouping=None):
        self.grouping = grouping or SingletonGrouping()

    def assemble(
        self,
        items: Sequence[FeedbackItem],
        now: Optional[datetime] = None,
    ) -> Tuple[List[Cluster], List[FeedbackItem]]:
        """
        Group pending items and create one cluster per group.

        Items already clustered (or otherwise no longer pending) are skipped.

        Returns:
            Tuple of (new clusters, member items updated to clustered)
        """
        now = now or datetime.now(timezone.utc)
        candidates = [item for item in items if item.status == FeedbackStatus.PENDING.value]
        if not candidates:
            return [], []

        clusters: List[Cluster] = []
        updated_items: List[FeedbackItem] = []

        for group in self.grouping.group(candidates):
            cluster = self._new_cluster(group, now)
            members = [
                item.model_copy(update={
                    "status": FeedbackStatus.CLUSTERED.value,
                    "cluster_id": cluster.cluster_id,
                })
                for item in group
            ]
            cluster = recompute_cluster(cluster, {m.feedback_id: m for m in members}, now=now)

            clusters.append(cluster)
            updated_items.extend(members)

        logger.info(f"Assembled {len(clusters)} clusters from {len(candidates)} items")
        return clusters, updated_items

    def _new_cluster(self, group: Sequence[FeedbackItem], now: datetime) -> Cluster:
        # The most severe member names the cluster
        lead = max(group, key=lambda item: item.normalized_severity)
        title = lead.summary or f"Issue reported via {lead.source}"

        tags: List[str] = []
        for item in group:
            tags = merge_keywords(tags, item.keywords)

        return Cluster(
            summary=ClusterSummary(
                title=title[:TITLE_LENGTH],
                description=lead.content[:DESCRIPTION_LENGTH],
                root_cause=PENDING_ANALYSIS,
                suggested_fix=PENDING_ANALYSIS,
                affected_area="Unknown",
            ),
            feedback_items=[item.feedback_id for item in group],
            tags=tags,
            created_at=now,
            updated_at=now,
        )
