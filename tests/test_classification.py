"""Unit tests for classification orchestration."""
from unittest.mock import Mock
from src.analysis.classification import (
    apply_classification,
    blend_severity,
    classify_items,
    merge_keywords,
    SUMMARY_LENGTH,
)
from src.models.schemas import ClassificationResult
from conftest import FakeClassifier, make_item


class TestBlendSeverity:

    def test_weighted_blend(self):
        # 90 * 0.7 + 50 * 0.3 = 78
        assert blend_severity(50, 90) == 78

    def test_rounds_half_up(self):
        # 75 * 0.7 + 50 * 0.3 = 67.5
        assert blend_severity(50, 75) == 68

    def test_zero_technical_severity_keeps_current(self):
        assert blend_severity(64, 0) == 64


class TestApplyClassification:

    def test_updates_item(self):
        item = make_item("Login crash", severity=50, keywords=["login", "crash"])
        result = ClassificationResult(
            feedback_type="bug",
            sentiment_score=-0.7,
            technical_severity=90,
            keywords=["crash", "auth"],
            summary="Login crashes on start",
        )

        updated = apply_classification(item, result)

        assert updated.feedback_type == "bug"
        assert updated.sentiment_score == -0.7
        assert updated.normalized_severity == 78
        assert updated.keywords == ["login", "crash", "auth"]
        assert updated.summary == "Login crashes on start"
        assert updated.status == "pending"
        assert item.feedback_type == "unknown"

    def test_empty_summary_keeps_existing(self):
        item = make_item(summary="Earlier summary")

        updated = apply_classification(item, ClassificationResult(summary=""))

        assert updated.summary == "Earlier summary"

    def test_long_summary_truncated_to_column_width(self):
        updated = apply_classification(make_item(), ClassificationResult(summary="s" * 1500))

        assert updated.summary == "s" * SUMMARY_LENGTH
        assert SUMMARY_LENGTH == 1000

    def test_merge_keywords(self):
        assert merge_keywords(["a", "b"], ["b", "c"]) == ["a", "b", "c"]


class TestClassifyItems:

    def test_batches_of_ten(self):
        items = [make_item(f"item {i}") for i in range(25)]
        classifier = FakeClassifier(ClassificationResult(feedback_type="bug", technical_severity=80))

        classified, errors = classify_items(items, classifier)

        assert [len(batch) for batch in classifier.calls] == [10, 10, 5]
        assert len(classified) == 25
        assert errors == []
        assert all(i.feedback_type == "bug" for i in classified)

    def test_batch_size_capped_at_ten(self):
        items = [make_item(f"item {i}") for i in range(12)]
        classifier = FakeClassifier()

        classify_items(items, classifier, batch_size=50)

        assert [len(batch) for batch in classifier.calls] == [10, 2]

    def test_failed_batch_is_isolated(self):
        items = [make_item(f"item {i}") for i in range(30)]
        ok = [ClassificationResult(feedback_type="bug")] * 10
        classifier = Mock()
        classifier.classify_batch.side_effect = [ok, RuntimeError("upstream 502"), ok]

        classified, errors = classify_items(items, classifier)

        assert classifier.classify_batch.call_count == 3
        assert len(classified) == 20
        assert {i.content for i in classified} == {f"item {i}" for i in list(range(10)) + list(range(20, 30))}
        assert errors == ["Classification batch 2 failed: upstream 502"]

    def test_misaligned_results_rejected(self):
        items = [make_item(f"item {i}") for i in range(3)]
        classifier = Mock()
        classifier.classify_batch.return_value = [ClassificationResult()]

        classified, errors = classify_items(items, classifier)

        assert classified == []
        assert errors == ["Classification batch 1 returned misaligned results"]

    def test_empty_input(self):
        classifier = FakeClassifier()

        assert classify_items([], classifier) == ([], [])
        assert classifier.calls == []
