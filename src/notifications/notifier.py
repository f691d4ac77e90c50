import logging
from typing import List

from src.analysis.severity import severity_label
from src.models.schemas import Cluster

logger = logging.getLogger(__name__)


class ClusterAlertNotifier:
    """
    Alert delivery for severe clusters.

    Alerts are written to the Python logger at WARNING. Subclasses can wire
    send_cluster_alert to email or chat without changing callers, as long as
    they keep the contract: return True on delivery, False (or raise) on failure.
    """

    def __init__(self, enabled: bool = True, dashboard_url: str = "http://localhost:3000"):
        self.enabled = enabled
        self.dashboard_url = dashboard_url.rstrip("/")

    def format_subject(self, cluster: Cluster) -> str:
        return f"{severity_label(cluster.aggregate_severity)} Issue: {cluster.summary.title}"

    def format_body(self, cluster: Cluster) -> str:
        metrics = cluster.metrics
        lines: List[str] = [
            f"ALERT: {self.format_subject(cluster)}",
            f"  Priority: {cluster.priority}",
            f"  Aggregate severity: {cluster.aggregate_severity}/100",
            f"  Reports: {metrics.total_items} (max severity {metrics.max_severity})",
            f"  Sources: {', '.join(metrics.sources) or 'n/a'}",
            f"  Trend: {metrics.trend}",
            f"  Description: {cluster.summary.description}",
            f"  Details: {self.dashboard_url}/dashboard/clusters/{cluster.cluster_id}",
        ]
        return "\n".join(lines)

    def send_cluster_alert(self, cluster: Cluster) -> bool:
        if not self.enabled:
            logger.debug("Notifications are disabled; alert not delivered.")
            return False

        logger.warning(self.format_body(cluster))
        return True
