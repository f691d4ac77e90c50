"""Unit tests for the IngestionPipeline class."""
import json
import pytest
from unittest.mock import patch
from src.pipelines.ingest import IngestionPipeline, load_records


class TestIngestionPipeline:
    """Test IngestionPipeline class."""

    @patch('src.pipelines.ingest.SQLClient')
    def test_pipeline_initialization(self, mock_sql_client, mock_config):
        pipeline = IngestionPipeline(mock_config)

        assert pipeline.config == mock_config
        mock_sql_client.assert_called_once_with(mock_config)

    def test_run_scores_and_saves_items(self, mock_config, sql_store):
        records = [
            {"source": "app_store", "content": "App crashes on launch every time",
             "metadata": {"star_rating": 1, "app_version": "3.0"}},
            {"source": "quora", "content": "How do I export my boards?",
             "metadata": {"quora_upvotes": 20, "follower_count": 1500}},
        ]

        result = IngestionPipeline(mock_config, sql_client=sql_store).run(records)

        assert result.success is True
        assert result.items_processed == 2
        assert result.items_saved == 2
        assert result.items_skipped == 0
        assert result.errors == []

        crash = sql_store.items[result.saved_ids[0]]
        assert crash.status == "pending"
        # 95 from one star + 40 for "crash", clamped
        assert crash.normalized_severity == 100
        assert crash.source_metadata.app_version == "3.0"
        assert "crashes" in crash.keywords

        question = sql_store.items[result.saved_ids[1]]
        assert question.normalized_severity == 55
        assert sql_store.connect_calls == 1
        assert sql_store.close_calls == 1

    def test_duplicates_skipped(self, mock_config, sql_store):
        pipeline = IngestionPipeline(mock_config, sql_client=sql_store)
        record = {"source": "reddit", "content": "Sync is broken again", "metadata": {"reddit_score": 3}}

        first = pipeline.run([record, dict(record)])
        second = pipeline.run([record])

        assert first.items_saved == 1
        assert first.items_skipped == 1
        assert second.items_saved == 0
        assert second.items_skipped == 1
        assert len(sql_store.items) == 1

    def test_duplicates_kept_on_request(self, mock_config, sql_store):
        record = {"source": "reddit", "content": "Sync is broken again"}

        result = IngestionPipeline(mock_config, sql_client=sql_store).run(
            [record, record], skip_duplicates=False
        )

        assert result.items_saved == 2

    def test_invalid_records_reported(self, mock_config, sql_store):
        records = [
            {"source": "twitter", "content": "unsupported source"},
            {"source": "reddit", "content": ""},
            {"source": "reddit", "content": "valid one"},
        ]

        result = IngestionPipeline(mock_config, sql_client=sql_store).run(records)

        assert result.items_processed == 3
        assert result.items_saved == 1
        assert len(result.errors) == 2
        assert result.errors[0].startswith("Record 0:")
        assert result.errors[1].startswith("Record 1:")

    def test_force_source(self, mock_config, sql_store):
        records = [{"source": "reddit", "content": "Uploaded by ops", "metadata": {"source": "reddit"}}]

        result = IngestionPipeline(mock_config, sql_client=sql_store).run(records, force_source="manual_upload")

        item = sql_store.items[result.saved_ids[0]]
        assert item.source == "manual_upload"
        assert item.source_metadata.source == "manual_upload"
        assert item.normalized_severity == 50

    def test_save_failure_recorded(self, mock_config, sql_store):
        def failing_insert(items):
            raise RuntimeError("deadlock victim")

        sql_store.insert_feedback = failing_insert

        result = IngestionPipeline(mock_config, sql_client=sql_store).run(
            [{"source": "reddit", "content": "text"}]
        )

        assert result.items_saved == 0
        assert result.errors == ["Record 0: failed to save (deadlock victim)"]
        assert sql_store.close_calls == 1


class TestLoadRecords:

    def test_json_array(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps([{"source": "reddit", "content": "a"}]))

        assert load_records(path) == [{"source": "reddit", "content": "a"}]

    def test_json_wrapped_records(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps({"records": [{"source": "reddit", "content": "a"}]}))

        assert len(load_records(path)) == 1

    def test_jsonl(self, tmp_path):
        path = tmp_path / "records.jsonl"
        path.write_text('{"source": "reddit", "content": "a"}\n\n{"source": "quora", "content": "b"}\n')

        assert [r["source"] for r in load_records(path)] == ["reddit", "quora"]
