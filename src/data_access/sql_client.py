import json
import pymssql
from typing import Any, Dict, List, Optional, Sequence, Union
from datetime import datetime, timezone
from src.config.settings import Settings
from src.models.schemas import Cluster, ClusterMetrics, ClusterSummary, FeedbackItem, OPEN_CLUSTER_STATUSES


FEEDBACK_COLUMNS = """
    feedback_id, source, content, source_metadata, normalized_severity, feedback_type,
    status, sentiment_score, keywords, summary, cluster_id, created_at
"""

CLUSTER_COLUMNS = """
    cluster_id, title, description, root_cause, suggested_fix, affected_area,
    total_items, avg_severity, max_severity, sources, first_seen, last_seen, trend,
    aggregate_severity, priority, status, feedback_items, alert_sent, alert_sent_at,
    tags, created_at, updated_at
"""

MERGE_CLUSTER_QUERY = f"""
    MERGE INTO feedback_engine.clusters AS target
    USING (VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s))
        AS source ({CLUSTER_COLUMNS})
    ON target.cluster_id = source.cluster_id
    WHEN MATCHED THEN
        UPDATE SET
            title = source.title,
            description = source.description,
            root_cause = source.root_cause,
            suggested_fix = source.suggested_fix,
            affected_area = source.affected_area,
            total_items = source.total_items,
            avg_severity = source.avg_severity,
            max_severity = source.max_severity,
            sources = source.sources,
            first_seen = source.first_seen,
            last_seen = source.last_seen,
            trend = source.trend,
            aggregate_severity = source.aggregate_severity,
            priority = source.priority,
            status = source.status,
            feedback_items = source.feedback_items,
            alert_sent = source.alert_sent,
            alert_sent_at = source.alert_sent_at,
            tags = source.tags,
            updated_at = source.updated_at
    WHEN NOT MATCHED THEN
        INSERT ({CLUSTER_COLUMNS})
        VALUES (source.cluster_id, source.title, source.description, source.root_cause,
                source.suggested_fix, source.affected_area, source.total_items,
                source.avg_severity, source.max_severity, source.sources, source.first_seen,
                source.last_seen, source.trend, source.aggregate_severity, source.priority,
                source.status, source.feedback_items, source.alert_sent, source.alert_sent_at,
                source.tags, source.created_at, source.updated_at);
"""

UPDATE_FEEDBACK_QUERY = """
    UPDATE feedback_engine.feedback_items
    SET normalized_severity = %s,
        feedback_type = %s,
        status = %s,
        sentiment_score = %s,
        keywords = %s,
        summary = %s,
        cluster_id = %s,
        updated_at = %s
    WHERE feedback_id = %s
"""


def _value(field: Any) -> Any:
    return getattr(field, "value", field)


def _as_list(value: Union[str, Sequence[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [_value(v) for v in value]


class SQLClient:
    """SQL Server client for feedback items and clusters."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None

    def connect(self) -> None:
        """Establish database connection."""
        self.conn = pymssql.connect(
            server=self.config.sql_server_host,
            port=self.config.sql_server_port,
            user=self.config.sql_server_username,
            password=self.config.sql_server_password,
            database=self.config.sql_server_database
        )

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def initialize_schema(self) -> None:
        """Create the feedback and cluster tables if they don't exist."""
        if not self.conn:
            self.connect()

        schema_sql = """
            IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = 'feedback_engine')
                EXEC('CREATE SCHEMA feedback_engine');

            IF OBJECT_ID('feedback_engine.feedback_items', 'U') IS NULL
            CREATE TABLE feedback_engine.feedback_items (
                feedback_id VARCHAR(64) PRIMARY KEY,
                source VARCHAR(32) NOT NULL,
                content NVARCHAR(MAX) NOT NULL,
                content_preview NVARCHAR(200) NOT NULL,
                source_metadata NVARCHAR(MAX) NOT NULL,
                normalized_severity INT NOT NULL,
                feedback_type VARCHAR(32) NOT NULL,
                status VARCHAR(16) NOT NULL,
                sentiment_score FLOAT NULL,
                keywords NVARCHAR(MAX) NOT NULL,
                summary NVARCHAR(1000) NULL,
                cluster_id VARCHAR(64) NULL,
                created_at DATETIME2 NOT NULL,
                updated_at DATETIME2 NOT NULL
            );

            IF OBJECT_ID('feedback_engine.clusters', 'U') IS NULL
            CREATE TABLE feedback_engine.clusters (
                cluster_id VARCHAR(64) PRIMARY KEY,
                title NVARCHAR(200) NOT NULL,
                description NVARCHAR(2000) NOT NULL,
                root_cause NVARCHAR(1000) NULL,
                suggested_fix NVARCHAR(2000) NULL,
                affected_area NVARCHAR(100) NULL,
                total_items INT NOT NULL,
                avg_severity INT NOT NULL,
                max_severity INT NOT NULL,
                sources NVARCHAR(MAX) NOT NULL,
                first_seen DATETIME2 NOT NULL,
                last_seen DATETIME2 NOT NULL,
                trend VARCHAR(16) NOT NULL,
                aggregate_severity INT NOT NULL,
                priority VARCHAR(16) NOT NULL,
                status VARCHAR(16) NOT NULL,
                feedback_items NVARCHAR(MAX) NOT NULL,
                alert_sent BIT NOT NULL,
                alert_sent_at DATETIME2 NULL,
                tags NVARCHAR(MAX) NOT NULL,
                created_at DATETIME2 NOT NULL,
                updated_at DATETIME2 NOT NULL
            );
        """

        with self.conn.cursor() as cursor:
            cursor.execute(schema_sql)
            self.conn.commit()

    # ------------------------------------------------------------------
    # Feedback items
    # ------------------------------------------------------------------

    def get_pending_feedback(self, limit: int = 50) -> List[FeedbackItem]:
        """Fetch pending items, most severe first."""
        if not self.conn:
            self.connect()

        query = f"""
            SELECT TOP {int(limit)} {FEEDBACK_COLUMNS}
            FROM feedback_engine.feedback_items
            WHERE status = 'pending'
            ORDER BY normalized_severity DESC, created_at ASC
        """

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query)
            return [self._row_to_item(row) for row in cursor.fetchall()]

    def get_feedback_by_ids(self, feedback_ids: Sequence[str]) -> List[FeedbackItem]:
        """Retrieve specific feedback items by IDs."""
        if not feedback_ids:
            return []
        if not self.conn:
            self.connect()

        placeholders = ','.join(['%s'] * len(feedback_ids))
        query = f"""
            SELECT {FEEDBACK_COLUMNS}
            FROM feedback_engine.feedback_items
            WHERE feedback_id IN ({placeholders})
            ORDER BY normalized_severity DESC
        """

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(feedback_ids))
            return [self._row_to_item(row) for row in cursor.fetchall()]

    def get_feedback(
        self,
        status: Optional[str] = None,
        source: Optional[str] = None,
        feedback_type: Optional[str] = None,
        min_severity: Optional[int] = None,
        statuses: Optional[Sequence[str]] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[FeedbackItem]:
        """Query feedback items with optional filters, most severe first."""
        if not self.conn:
            self.connect()

        query = f"SELECT {FEEDBACK_COLUMNS} FROM feedback_engine.feedback_items WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND status = %s"
            params.append(_value(status))
        if statuses:
            query += f" AND status IN ({','.join(['%s'] * len(statuses))})"
            params.extend(_as_list(statuses))
        if source:
            query += " AND source = %s"
            params.append(_value(source))
        if feedback_type:
            query += " AND feedback_type = %s"
            params.append(_value(feedback_type))
        if min_severity is not None:
            query += " AND normalized_severity >= %s"
            params.append(min_severity)

        query += " ORDER BY normalized_severity DESC, created_at DESC OFFSET %s ROWS FETCH NEXT %s ROWS ONLY"
        params.extend([skip, limit])

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(params))
            return [self._row_to_item(row) for row in cursor.fetchall()]

    def find_feedback_by_preview(self, preview: str) -> Optional[str]:
        """Return the id of an item whose first 200 characters match, if any."""
        if not self.conn:
            self.connect()

        query = """
            SELECT TOP 1 feedback_id
            FROM feedback_engine.feedback_items
            WHERE content_preview = %s
        """

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, (preview[:200],))
            row = cursor.fetchone()
            return row['feedback_id'] if row else None

    def insert_feedback(self, items: Sequence[FeedbackItem]) -> None:
        """Insert newly ingested feedback items."""
        if not self.conn:
            self.connect()

        query = f"""
            INSERT INTO feedback_engine.feedback_items ({FEEDBACK_COLUMNS}, content_preview, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """

        now = datetime.now(timezone.utc)
        with self.conn.cursor() as cursor:
            for item in items:
                cursor.execute(query, self._item_params(item) + (item.content_preview, now))
            self.conn.commit()

    def resolve_feedback_items(self, feedback_ids: Sequence[str]) -> int:
        """Mark feedback items resolved. Returns the number of rows changed."""
        if not feedback_ids:
            return 0
        if not self.conn:
            self.connect()

        placeholders = ','.join(['%s'] * len(feedback_ids))
        query = f"""
            UPDATE feedback_engine.feedback_items
            SET status = 'resolved', updated_at = %s
            WHERE feedback_id IN ({placeholders})
        """

        with self.conn.cursor() as cursor:
            cursor.execute(query, (datetime.now(timezone.utc), *feedback_ids))
            self.conn.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def upsert_clusters(self, clusters: Sequence[Cluster]) -> None:
        """Insert new clusters or overwrite existing ones."""
        if not self.conn:
            self.connect()

        with self.conn.cursor() as cursor:
            for cluster in clusters:
                cursor.execute(MERGE_CLUSTER_QUERY, self._cluster_params(cluster))
            self.conn.commit()

    def save_cluster_with_members(self, cluster: Cluster, members: Sequence[FeedbackItem]) -> None:
        """
        Write a cluster and its member items in one transaction.

        Either the cluster row and every member update are committed, or the
        transaction is rolled back and nothing is persisted.
        """
        if not self.conn:
            self.connect()

        try:
            with self.conn.cursor() as cursor:
                cursor.execute(MERGE_CLUSTER_QUERY, self._cluster_params(cluster))
                self._execute_item_updates(cursor, members)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_cluster_by_id(self, cluster_id: str) -> Optional[Cluster]:
        if not self.conn:
            self.connect()

        query = f"SELECT {CLUSTER_COLUMNS} FROM feedback_engine.clusters WHERE cluster_id = %s"

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, (cluster_id,))
            row = cursor.fetchone()
            return self._row_to_cluster(row) if row else None

    def get_clusters(
        self,
        status: Union[str, Sequence[str], None] = None,
        priority: Optional[str] = None,
        min_severity: Optional[int] = None,
        alert_sent: Optional[bool] = None,
        limit: Optional[int] = 20,
        skip: int = 0,
    ) -> List[Cluster]:
        """Query clusters, highest aggregate severity (then most items) first."""
        if not self.conn:
            self.connect()

        where, params = self._cluster_filters(status, priority, min_severity, alert_sent)
        query = f"SELECT {CLUSTER_COLUMNS} FROM feedback_engine.clusters WHERE 1=1{where}"
        query += " ORDER BY aggregate_severity DESC, total_items DESC"
        if limit is not None:
            query += " OFFSET %s ROWS FETCH NEXT %s ROWS ONLY"
            params.extend([skip, limit])

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(params))
            return [self._row_to_cluster(row) for row in cursor.fetchall()]

    def count_clusters(
        self,
        status: Union[str, Sequence[str], None] = None,
        priority: Optional[str] = None,
        min_severity: Optional[int] = None,
    ) -> int:
        if not self.conn:
            self.connect()

        where, params = self._cluster_filters(status, priority, min_severity, None)
        query = f"SELECT COUNT(*) AS total FROM feedback_engine.clusters WHERE 1=1{where}"

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(params))
            row = cursor.fetchone()
            return int(row['total']) if row else 0

    def get_alert_candidates(self, threshold: int) -> List[Cluster]:
        """Open clusters at or above threshold that have not been alerted yet."""
        return self.get_clusters(
            status=list(OPEN_CLUSTER_STATUSES),
            min_severity=threshold,
            alert_sent=False,
            limit=None,
        )

    def update_cluster_status(self, cluster_id: str, status: str) -> bool:
        if not self.conn:
            self.connect()

        query = """
            UPDATE feedback_engine.clusters
            SET status = %s, updated_at = %s
            WHERE cluster_id = %s
        """

        with self.conn.cursor() as cursor:
            cursor.execute(query, (_value(status), datetime.now(timezone.utc), cluster_id))
            self.conn.commit()
            return cursor.rowcount > 0

    def reject_clusters(self, cluster_ids: Sequence[str]) -> int:
        if not cluster_ids:
            return 0
        if not self.conn:
            self.connect()

        placeholders = ','.join(['%s'] * len(cluster_ids))
        query = f"""
            UPDATE feedback_engine.clusters
            SET status = 'rejected', updated_at = %s
            WHERE cluster_id IN ({placeholders})
        """

        with self.conn.cursor() as cursor:
            cursor.execute(query, (datetime.now(timezone.utc), *cluster_ids))
            self.conn.commit()
            return cursor.rowcount

    def reset_cluster_alert(self, cluster_id: str) -> bool:
        if not self.conn:
            self.connect()

        query = """
            UPDATE feedback_engine.clusters
            SET alert_sent = 0, alert_sent_at = NULL, updated_at = %s
            WHERE cluster_id = %s
        """

        with self.conn.cursor() as cursor:
            cursor.execute(query, (datetime.now(timezone.utc), cluster_id))
            self.conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _cluster_filters(status, priority, min_severity, alert_sent):
        where = ""
        params: List[Any] = []

        statuses = _as_list(status)
        if statuses:
            where += f" AND status IN ({','.join(['%s'] * len(statuses))})"
            params.extend(statuses)
        if priority:
            where += " AND priority = %s"
            params.append(_value(priority))
        if min_severity is not None:
            where += " AND aggregate_severity >= %s"
            params.append(min_severity)
        if alert_sent is not None:
            where += " AND alert_sent = %s"
            params.append(1 if alert_sent else 0)
        return where, params

    @staticmethod
    def _execute_item_updates(cursor, items: Sequence[FeedbackItem]) -> None:
        now = datetime.now(timezone.utc)
        for item in items:
            cursor.execute(
                UPDATE_FEEDBACK_QUERY,
                (item.normalized_severity, _value(item.feedback_type), _value(item.status),
                 item.sentiment_score, json.dumps(item.keywords), item.summary,
                 item.cluster_id, now, item.feedback_id)
            )

    @staticmethod
    def _item_params(item: FeedbackItem) -> tuple:
        return (
            item.feedback_id,
            _value(item.source),
            item.content,
            item.source_metadata.model_dump_json(),
            item.normalized_severity,
            _value(item.feedback_type),
            _value(item.status),
            item.sentiment_score,
            json.dumps(item.keywords),
            item.summary,
            item.cluster_id,
            item.created_at,
        )

    @staticmethod
    def _cluster_params(cluster: Cluster) -> tuple:
        summary, metrics = cluster.summary, cluster.metrics
        return (
            cluster.cluster_id,
            summary.title,
            summary.description,
            summary.root_cause,
            summary.suggested_fix,
            summary.affected_area,
            metrics.total_items,
            metrics.avg_severity,
            metrics.max_severity,
            json.dumps(metrics.sources),
            metrics.first_seen,
            metrics.last_seen,
            _value(metrics.trend),
            cluster.aggregate_severity,
            _value(cluster.priority),
            _value(cluster.status),
            json.dumps(cluster.feedback_items),
            1 if cluster.alert_sent else 0,
            cluster.alert_sent_at,
            json.dumps(cluster.tags),
            cluster.created_at,
            cluster.updated_at,
        )

    @staticmethod
    def _row_to_item(row: Dict[str, Any]) -> FeedbackItem:
        return FeedbackItem(
            feedback_id=row['feedback_id'],
            source=row['source'],
            content=row['content'],
            source_metadata=json.loads(row['source_metadata'] or '{}'),
            normalized_severity=row['normalized_severity'],
            feedback_type=row['feedback_type'],
            status=row['status'],
            sentiment_score=row.get('sentiment_score'),
            keywords=json.loads(row.get('keywords') or '[]'),
            summary=row.get('summary'),
            cluster_id=row.get('cluster_id'),
            created_at=row['created_at'],
        )

    @staticmethod
    def _row_to_cluster(row: Dict[str, Any]) -> Cluster:
        return Cluster(
            cluster_id=row['cluster_id'],
            summary=ClusterSummary(
                title=row['title'],
                description=row['description'],
                root_cause=row.get('root_cause'),
                suggested_fix=row.get('suggested_fix'),
                affected_area=row.get('affected_area'),
            ),
            metrics=ClusterMetrics(
                total_items=row['total_items'],
                avg_severity=row['avg_severity'],
                max_severity=row['max_severity'],
                sources=json.loads(row['sources'] or '[]'),
                first_seen=row['first_seen'],
                last_seen=row['last_seen'],
                trend=row['trend'],
            ),
            aggregate_severity=row['aggregate_severity'],
            priority=row['priority'],
            status=row['status'],
            feedback_items=json.loads(row['feedback_items'] or '[]'),
            alert_sent=bool(row['alert_sent']),
            alert_sent_at=row.get('alert_sent_at'),
            tags=json.loads(row.get('tags') or '[]'),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )
