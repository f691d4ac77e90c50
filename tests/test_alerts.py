"""Unit tests for alert gating and the alert notifier."""
import logging
import pytest
from unittest.mock import Mock
from datetime import datetime, timezone
from src.analysis.alerts import AlertDeliveryError, AlertGate
from src.models.schemas import Cluster, ClusterMetrics, ClusterSummary
from src.notifications.notifier import ClusterAlertNotifier


NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _cluster(aggregate=92, **kwargs):
    return Cluster(
        summary=ClusterSummary(title="Checkout crash", description="App crashes at checkout"),
        metrics=ClusterMetrics(total_items=3, avg_severity=85, max_severity=95, sources=["app_store"]),
        aggregate_severity=aggregate,
        priority="critical",
        **kwargs
    )


@pytest.fixture
def notifier():
    notifier = Mock()
    notifier.send_cluster_alert.return_value = True
    return notifier


class TestAlertGate:

    def test_fires_once(self, notifier):
        gate = AlertGate(notifier, threshold=80)

        alerted, fired = gate.maybe_alert(_cluster(), now=NOW)
        again, fired_again = gate.maybe_alert(alerted, now=NOW)

        assert fired is True
        assert alerted.alert_sent is True
        assert alerted.alert_sent_at == NOW
        assert fired_again is False
        assert again is alerted
        notifier.send_cluster_alert.assert_called_once()

    def test_threshold_is_inclusive(self, notifier):
        gate = AlertGate(notifier, threshold=80)

        assert gate.should_alert(_cluster(aggregate=80))
        assert not gate.should_alert(_cluster(aggregate=79))

    def test_threshold_override(self, notifier):
        gate = AlertGate(notifier, threshold=80)

        assert gate.should_alert(_cluster(aggregate=60), threshold=60)

    @pytest.mark.parametrize("status", ["resolved", "wont_fix", "rejected"])
    def test_terminal_clusters_never_alert(self, notifier, status):
        gate = AlertGate(notifier)

        cluster, fired = gate.maybe_alert(_cluster(status=status))

        assert fired is False
        notifier.send_cluster_alert.assert_not_called()

    def test_delivery_failure_leaves_cluster_unalerted(self, notifier):
        notifier.send_cluster_alert.return_value = False
        gate = AlertGate(notifier)
        cluster = _cluster()

        with pytest.raises(AlertDeliveryError):
            gate.maybe_alert(cluster)

        assert cluster.alert_sent is False
        assert gate.should_alert(cluster)

    def test_notifier_exception_propagates(self, notifier):
        notifier.send_cluster_alert.side_effect = ConnectionError("smtp down")
        gate = AlertGate(notifier)

        with pytest.raises(ConnectionError):
            gate.maybe_alert(_cluster())


class TestClusterAlertNotifier:

    def test_subject_uses_severity_label(self):
        notifier = ClusterAlertNotifier()

        assert notifier.format_subject(_cluster()) == "Critical Issue: Checkout crash"

    def test_body_links_dashboard(self):
        notifier = ClusterAlertNotifier(dashboard_url="https://insights.example.com/")
        cluster = _cluster()

        body = notifier.format_body(cluster)

        assert f"https://insights.example.com/dashboard/clusters/{cluster.cluster_id}" in body
        assert "Aggregate severity: 92/100" in body
        assert "Sources: app_store" in body

    def test_send_logs_warning(self, caplog):
        notifier = ClusterAlertNotifier()

        with caplog.at_level(logging.WARNING, logger="src.notifications.notifier"):
            assert notifier.send_cluster_alert(_cluster()) is True

        assert "Checkout crash" in caplog.text

    def test_disabled_notifier_reports_failure(self):
        assert ClusterAlertNotifier(enabled=False).send_cluster_alert(_cluster()) is False
