"""Shared fixtures and in-memory collaborators for pipeline tests."""
import pytest
from unittest.mock import Mock
from datetime import datetime, timezone
from src.config.settings import Settings
from src.models.schemas import ClassificationResult, FeedbackItem, OPEN_CLUSTER_STATUSES


def make_item(content="Something went wrong", source="app_store", severity=50, **kwargs):
    """Build a feedback item with sensible defaults."""
    return FeedbackItem(
        source=source,
        content=content,
        normalized_severity=severity,
        **kwargs
    )


class InMemorySQLClient:
    """Dict-backed stand-in for SQLClient covering the pipeline's calls."""

    def __init__(self):
        self.items = {}
        self.clusters = {}
        self.connect_calls = 0
        self.close_calls = 0

    def connect(self):
        self.connect_calls += 1

    def close(self):
        self.close_calls += 1

    def get_pending_feedback(self, limit=50):
        pending = [i for i in self.items.values() if i.status == "pending"]
        pending.sort(key=lambda i: i.normalized_severity, reverse=True)
        return pending[:limit]

    def get_feedback_by_ids(self, feedback_ids):
        return [self.items[fid] for fid in feedback_ids if fid in self.items]

    def find_feedback_by_preview(self, preview):
        for item in self.items.values():
            if item.content_preview == preview[:200]:
                return item.feedback_id
        return None

    def insert_feedback(self, items):
        for item in items:
            self.items[item.feedback_id] = item

    def upsert_clusters(self, clusters):
        for cluster in clusters:
            self.clusters[cluster.cluster_id] = cluster

    def save_cluster_with_members(self, cluster, members):
        self.clusters[cluster.cluster_id] = cluster
        for item in members:
            self.items[item.feedback_id] = item

    def get_clusters(self, status=None, priority=None, min_severity=None, alert_sent=None, limit=20, skip=0):
        statuses = [status] if isinstance(status, str) else status
        result = [
            c for c in self.clusters.values()
            if (not statuses or c.status in statuses)
            and (priority is None or c.priority == priority)
            and (min_severity is None or c.aggregate_severity >= min_severity)
            and (alert_sent is None or c.alert_sent == alert_sent)
        ]
        result.sort(key=lambda c: (c.aggregate_severity, c.metrics.total_items), reverse=True)
        return result[skip:] if limit is None else result[skip:skip + limit]

    def get_alert_candidates(self, threshold):
        return self.get_clusters(
            status=list(OPEN_CLUSTER_STATUSES), min_severity=threshold, alert_sent=False, limit=None
        )


class FakeClassifier:
    """Returns one fixed classification per item."""

    def __init__(self, result=None):
        self.result = result or ClassificationResult()
        self.calls = []

    def classify_batch(self, items):
        self.calls.append(list(items))
        return [self.result for _ in items]


@pytest.fixture
def mock_config():
    """Create a mock configuration."""
    config = Mock(spec=Settings)
    config.openai_api_key = "test-api-key"
    config.openai_base_url = None
    config.openai_llm_model = "gpt-4o-mini"
    config.openai_embedding_model = "text-embedding-3-small"
    config.llm_temperature = 0.3
    config.sql_server_host = "test-server"
    config.sql_server_port = 1433
    config.sql_server_database = "test-db"
    config.sql_server_username = "test-user"
    config.sql_server_password = "test-pass"
    config.batch_size = 50
    config.classification_batch_size = 10
    config.severity_threshold = 80
    config.alerts_enabled = True
    config.clustering_strategy = "singleton"
    config.similarity_distance_threshold = 0.25
    config.max_workers = 2
    return config


@pytest.fixture
def sql_store():
    return InMemorySQLClient()


@pytest.fixture
def fixed_now():
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
