"""
Read-side projections and operator actions over feedback and clusters.

Used by dashboards, the alerting collaborator and operators. Nothing here is
called by the automated analysis run except through SQLClient.
"""

from typing import Any, Dict, List, Optional, Sequence, Union
import logging

import pandas as pd

from src.data_access.sql_client import SQLClient
from src.models.schemas import Cluster, ClusterPriority, ClusterStatus, FeedbackItem, FeedbackStatus

logger = logging.getLogger(__name__)

CLUSTER_DETAIL_ITEM_LIMIT = 100


class ClusterQueryService:
    """Queries and operator commands for clusters and feedback."""

    def __init__(self, sql_client: SQLClient):
        self.sql_client = sql_client

    def list_clusters(
        self,
        status: Union[str, Sequence[str], None] = None,
        priority: Optional[str] = None,
        min_severity: Optional[int] = None,
        limit: int = 20,
        skip: int = 0,
    ) -> Dict[str, Any]:
        clusters = self.sql_client.get_clusters(
            status=status, priority=priority, min_severity=min_severity, limit=limit, skip=skip
        )
        total = self.sql_client.count_clusters(status=status, priority=priority, min_severity=min_severity)
        return {
            "clusters": clusters,
            "pagination": {
                "total": total,
                "limit": limit,
                "skip": skip,
                "has_more": skip + len(clusters) < total,
            },
        }

    def get_cluster_detail(self, cluster_id: str) -> Optional[Dict[str, Any]]:
        """A cluster with its member items, most severe first."""
        cluster = self.sql_client.get_cluster_by_id(cluster_id)
        if cluster is None:
            return None

        items = self.sql_client.get_feedback_by_ids(cluster.feedback_items)
        items = sorted(items, key=lambda i: i.normalized_severity, reverse=True)
        return {"cluster": cluster, "feedback_items": items[:CLUSTER_DETAIL_ITEM_LIMIT]}

    def cluster_stats(self, status: Union[str, Sequence[str], None] = None) -> Dict[str, Any]:
        clusters = self.sql_client.get_clusters(status=status, limit=None)
        return summarize_clusters(clusters)

    def list_feedback(
        self,
        status: Optional[str] = None,
        source: Optional[str] = None,
        feedback_type: Optional[str] = None,
        min_severity: Optional[int] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[FeedbackItem]:
        return self.sql_client.get_feedback(
            status=status,
            source=source,
            feedback_type=feedback_type,
            min_severity=min_severity,
            limit=limit,
            skip=skip,
        )

    def critical_feedback(self, threshold: int = 80, limit: int = 50) -> List[FeedbackItem]:
        """Pending or clustered items at or above threshold."""
        return self.sql_client.get_feedback(
            statuses=[FeedbackStatus.PENDING.value, FeedbackStatus.CLUSTERED.value],
            min_severity=threshold,
            limit=limit,
        )

    def set_cluster_status(self, cluster_id: str, status: Union[ClusterStatus, str]) -> Optional[Cluster]:
        """
        Change a cluster's status. Resolving a cluster resolves its items.

        Returns:
            The updated cluster, or None if it does not exist
        """
        status = ClusterStatus(getattr(status, "value", status)).value
        if not self.sql_client.update_cluster_status(cluster_id, status):
            return None

        cluster = self.sql_client.get_cluster_by_id(cluster_id)
        if cluster is not None and status == ClusterStatus.RESOLVED.value:
            resolved = self.sql_client.resolve_feedback_items(cluster.feedback_items)
            logger.info(f"Resolved cluster {cluster_id} and {resolved} feedback items")
        return cluster

    def reject_clusters(self, cluster_ids: Sequence[str]) -> int:
        if not cluster_ids:
            raise ValueError("cluster_ids must not be empty")
        return self.sql_client.reject_clusters(cluster_ids)

    def reset_alert(self, cluster_id: str) -> bool:
        """Re-arm the alert gate for a cluster."""
        return self.sql_client.reset_cluster_alert(cluster_id)


def summarize_clusters(clusters: Sequence[Cluster]) -> Dict[str, Any]:
    """Counts per priority, mean aggregate severity and total feedback items."""
    stats: Dict[str, Any] = {
        "total_clusters": 0,
        **{p.value: 0 for p in ClusterPriority},
        "avg_severity": 0.0,
        "total_feedback_items": 0,
    }
    if not clusters:
        return stats

    df = pd.DataFrame([
        {
            "priority": c.priority,
            "aggregate_severity": c.aggregate_severity,
            "total_items": c.metrics.total_items,
        }
        for c in clusters
    ])
    counts = df["priority"].value_counts()

    stats["total_clusters"] = len(df)
    for p in ClusterPriority:
        stats[p.value] = int(counts.get(p.value, 0))
    stats["avg_severity"] = round(float(df["aggregate_severity"].mean()), 1)
    stats["total_feedback_items"] = int(df["total_items"].sum())
    return stats
