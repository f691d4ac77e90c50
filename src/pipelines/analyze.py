"""
Analysis pipeline: classify pending feedback, group it into clusters,
refresh trends and alert on severe clusters.

Stages run in order FETCH_PENDING -> CLASSIFY -> CLUSTER -> TREND -> ALERT -> REPORT.
Failures inside a stage are collected in the result's errors; only a
configuration problem or a failed fetch marks the run unsuccessful.
Runs must be serialized by the caller; nothing here takes locks.
"""

from typing import Dict, List, Optional, Sequence
from datetime import datetime, timezone
import logging
import argparse

from src.config.settings import Settings, ConfigurationError
from src.data_access.sql_client import SQLClient
from src.agents.llm_agent import FeedbackClassifier
from src.embedding.embedder import Embedder
from src.notifications.notifier import ClusterAlertNotifier
from src.analysis.classification import classify_items
from src.analysis.clustering import ClusterAssembler, SimilarityGrouping
from src.analysis.trends import update_trend
from src.analysis.alerts import AlertGate
from src.models.schemas import AnalysisResult, Cluster, FeedbackItem, OPEN_CLUSTER_STATUSES


logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 200


class AnalysisPipeline:
    """Runs one analysis pass over pending feedback."""

    def __init__(
        self,
        config: Settings,
        sql_client: Optional[SQLClient] = None,
        classifier: Optional[FeedbackClassifier] = None,
        notifier: Optional[ClusterAlertNotifier] = None,
        assembler: Optional[ClusterAssembler] = None,
    ):
        """
        Initialize the analysis pipeline.

        Collaborators not passed in are built from config. The classifier and
        assembler are built lazily at the start of a run, so a missing
        credential surfaces as a failed run rather than a constructor error.

        Args:
            config: Application settings
            sql_client: Persistence client
            classifier: Feedback classifier (LLM-backed)
            notifier: Alert delivery collaborator
            assembler: Cluster assembler with its grouping strategy
        """
        self.config = config
        self.sql_client = sql_client or SQLClient(config)
        self.classifier = classifier
        self.notifier = notifier or ClusterAlertNotifier(enabled=config.alerts_enabled)
        self.assembler = assembler

    def _prepare(self) -> None:
        if self.classifier is None:
            self.classifier = FeedbackClassifier(self.config)
        if self.assembler is None:
            if self.config.clustering_strategy == "similarity":
                grouping = SimilarityGrouping(
                    Embedder(self.config),
                    distance_threshold=self.config.similarity_distance_threshold,
                )
                self.assembler = ClusterAssembler(grouping)
            elif self.config.clustering_strategy == "singleton":
                self.assembler = ClusterAssembler()
            else:
                raise ConfigurationError(f"Unknown clustering strategy '{self.config.clustering_strategy}'")

    def run(
        self,
        batch_size: Optional[int] = None,
        skip_alerts: bool = False,
        severity_threshold: Optional[int] = None,
        refresh_trends: bool = True,
    ) -> AnalysisResult:
        """
        Execute one analysis run.

        Args:
            batch_size: Maximum pending items to analyze (1-200, default from config)
            skip_alerts: Do not evaluate or send alerts
            severity_threshold: Aggregate severity that triggers an alert (default from config)
            refresh_trends: Recompute trends of the clusters touched by this run

        Returns:
            AnalysisResult with outcome counts and collected errors
        """
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

        batch_size = self.config.batch_size if batch_size is None else batch_size
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        threshold = self.config.severity_threshold if severity_threshold is None else severity_threshold
        skip_alerts = skip_alerts or not self.config.alerts_enabled

        result = AnalysisResult()

        try:
            self._prepare()
        except ConfigurationError as e:
            logger.error(f"Analysis aborted: {e}")
            result.success = False
            result.errors.append(str(e))
            return result

        logger.info(f"Starting analysis run (batch size {batch_size}, alert threshold {threshold})")

        try:
            # FETCH_PENDING
            try:
                self.sql_client.connect()
                pending = self.sql_client.get_pending_feedback(limit=batch_size)
            except Exception as e:
                logger.error(f"Failed to fetch pending feedback: {e}")
                result.success = False
                result.errors.append(f"Failed to fetch pending feedback: {e}")
                return result

            logger.info(f"Found {len(pending)} pending feedback items")

            clusters: List[Cluster] = []
            if pending:
                # CLASSIFY
                classified = self._classify(pending, result)
                result.items_classified = len(classified)

                # CLUSTER
                clusters, members = self._cluster(classified, result)
                result.clusters_created = len(clusters)

                # TREND
                if refresh_trends and clusters:
                    clusters = self._refresh_trends(clusters, members, result)

            # ALERT
            if not skip_alerts:
                result.alerts_sent = self._alert(clusters, threshold, result)

            # REPORT
            logger.info(
                f"Analysis complete: {result.items_classified} classified, "
                f"{result.clusters_created} clusters, {result.alerts_sent} alerts, "
                f"{len(result.errors)} errors"
            )
            return result

        finally:
            self.sql_client.close()

    def _classify(self, pending: Sequence[FeedbackItem], result: AnalysisResult) -> List[FeedbackItem]:
        # Classifications are persisted together with their cluster in _cluster
        classified, errors = classify_items(
            pending, self.classifier, batch_size=self.config.classification_batch_size
        )
        result.errors.extend(errors)
        return classified

    def _cluster(self, classified: Sequence[FeedbackItem], result: AnalysisResult):
        try:
            clusters, members = self.assembler.assemble(classified)
        except Exception as e:
            logger.error(f"Clustering failed: {e}")
            result.errors.append(f"Clustering failed: {e}")
            return [], {}

        members_by_id = {m.feedback_id: m for m in members}
        saved = []
        for cluster in clusters:
            cluster_members = [members_by_id[fid] for fid in cluster.feedback_items]
            try:
                self.sql_client.save_cluster_with_members(cluster, cluster_members)
                saved.append(cluster)
            except Exception as e:
                logger.error(f"Failed to save cluster {cluster.cluster_id}: {e}")
                result.errors.append(f"Failed to save cluster {cluster.cluster_id}: {e}")
        return saved, members_by_id

    def _refresh_trends(
        self,
        clusters: Sequence[Cluster],
        members_by_id: Dict[str, FeedbackItem],
        result: AnalysisResult,
    ) -> List[Cluster]:
        refreshed = []
        for cluster in clusters:
            updated = update_trend(cluster, members_by_id)
            if updated is not cluster:
                try:
                    self.sql_client.upsert_clusters([updated])
                except Exception as e:
                    logger.error(f"Failed to save trend for cluster {cluster.cluster_id}: {e}")
                    result.errors.append(f"Failed to save trend for cluster {cluster.cluster_id}: {e}")
                    updated = cluster
            refreshed.append(updated)
        return refreshed

    def _alert(self, clusters: Sequence[Cluster], threshold: int, result: AnalysisResult) -> int:
        candidates = {c.cluster_id: c for c in clusters}
        try:
            # Earlier clusters whose delivery failed are retried here
            for cluster in self.sql_client.get_alert_candidates(threshold):
                candidates.setdefault(cluster.cluster_id, cluster)
        except Exception as e:
            logger.error(f"Failed to load alert candidates: {e}")
            result.errors.append(f"Failed to load alert candidates: {e}")

        gate = AlertGate(self.notifier, threshold)
        sent = 0
        for cluster in candidates.values():
            try:
                updated, fired = gate.maybe_alert(cluster)
                if fired:
                    self.sql_client.upsert_clusters([updated])
                    sent += 1
            except Exception as e:
                logger.error(f"Alert failed for cluster {cluster.cluster_id}: {e}")
                result.errors.append(f"Alert failed for cluster {cluster.cluster_id}: {e}")
        return sent

    def update_trends(self) -> int:
        """
        Recompute trends for every active or reviewed cluster.

        Returns:
            Number of clusters whose trend changed
        """
        changed = 0
        try:
            self.sql_client.connect()
            clusters = self.sql_client.get_clusters(status=list(OPEN_CLUSTER_STATUSES), limit=None)
            logger.info(f"Refreshing trends for {len(clusters)} open clusters")

            for cluster in clusters:
                items = self.sql_client.get_feedback_by_ids(cluster.feedback_items)
                updated = update_trend(cluster, {i.feedback_id: i for i in items})
                if updated is not cluster:
                    updated = updated.model_copy(update={"updated_at": datetime.now(timezone.utc)})
                    self.sql_client.upsert_clusters([updated])
                    changed += 1
        finally:
            self.sql_client.close()

        logger.info(f"Trend refresh complete: {changed} clusters changed")
        return changed


def main():
    """Main entry point for running the analysis pipeline with CLI arguments."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description='Classify pending feedback, build issue clusters and send alerts.'
    )
    parser.add_argument('--batch-size', type=int, help='Maximum pending items to analyze (1-200)')
    parser.add_argument('--skip-alerts', action='store_true', help='Do not send alerts')
    parser.add_argument('--threshold', type=int, help='Aggregate severity that triggers an alert')
    parser.add_argument('--update-trends', action='store_true',
                        help='Only recompute trends of all open clusters')
    parser.add_argument('--init-schema', action='store_true', help='Create database tables first')

    args = parser.parse_args()

    if args.batch_size is not None and not 1 <= args.batch_size <= MAX_BATCH_SIZE:
        parser.error(f"--batch-size must be between 1 and {MAX_BATCH_SIZE}")

    config = Settings()
    pipeline = AnalysisPipeline(config)

    if args.init_schema:
        pipeline.sql_client.initialize_schema()
        pipeline.sql_client.close()

    if args.update_trends:
        changed = pipeline.update_trends()
        print(f"Trends updated for {changed} clusters")
        return

    result = pipeline.run(
        batch_size=args.batch_size,
        skip_alerts=args.skip_alerts,
        severity_threshold=args.threshold,
    )

    print("\n" + "="*60)
    print("ANALYSIS PIPELINE RESULTS")
    print("="*60)
    print(f"Success: {result.success}")
    print(f"Items classified: {result.items_classified}")
    print(f"Clusters created: {result.clusters_created}")
    print(f"Alerts sent: {result.alerts_sent}")
    print(f"Errors: {len(result.errors)}")
    for error in result.errors:
        print(f"  - {error}")
    print("="*60)

    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
