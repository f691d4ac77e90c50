"""Alert gating: fire at most one notification per cluster."""

from typing import Optional, Tuple
from datetime import datetime, timezone
import logging

from src.models.schemas import Cluster

logger = logging.getLogger(__name__)


class AlertDeliveryError(RuntimeError):
    """The notifier could not deliver an alert."""


class AlertGate:
    """Decides whether a cluster alert fires and marks it sent."""

    def __init__(self, notifier, threshold: int = 80):
        """
        Args:
            notifier: Object exposing send_cluster_alert(cluster) -> bool
            threshold: Minimum aggregate severity that triggers an alert
        """
        self.notifier = notifier
        self.threshold = threshold

    def should_alert(self, cluster: Cluster, threshold: Optional[int] = None) -> bool:
        threshold = self.threshold if threshold is None else threshold
        return (
            not cluster.alert_sent
            and not cluster.is_terminal
            and cluster.aggregate_severity >= threshold
        )

    def maybe_alert(
        self,
        cluster: Cluster,
        threshold: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Cluster, bool]:
        """
        Send an alert for the cluster if it crossed the threshold and none was sent yet.

        Returns:
            Tuple of (cluster, fired). On a fired alert the returned cluster has
            alert_sent set; otherwise it is the input unchanged.

        Raises:
            AlertDeliveryError: The notifier reported failure. The cluster is
                not marked so that a later run retries.
        """
        if not self.should_alert(cluster, threshold):
            return cluster, False

        delivered = self.notifier.send_cluster_alert(cluster)
        if not delivered:
            raise AlertDeliveryError(f"Alert delivery failed for cluster {cluster.cluster_id}")

        logger.info(
            f"Alert sent for cluster {cluster.cluster_id} "
            f"(aggregate severity {cluster.aggregate_severity}, priority {cluster.priority})"
        )
        return cluster.model_copy(update={
            "alert_sent": True,
            "alert_sent_at": now or datetime.now(timezone.utc),
        }), True
