"""
Ingestion pipeline: validate raw feedback records, score them and store
them as pending items for the next analysis run.

Records come from scrapers, file parsers or direct uploads as dicts with
`source`, `content` and `metadata` (or `source_metadata`).
"""

from typing import Any, Dict, Iterable, List, Optional, Set
from pathlib import Path
import json
import logging
import argparse

from pydantic import ValidationError

from src.config.settings import Settings
from src.data_access.sql_client import SQLClient
from src.analysis.keywords import extract_keywords
from src.analysis.severity import normalize_severity
from src.models.schemas import FeedbackItem, FeedbackSource, IngestResult, RawFeedback


logger = logging.getLogger(__name__)


def _prepare_record(record: Dict[str, Any], force_source: Optional[str]) -> Dict[str, Any]:
    data = dict(record)
    if "source_metadata" not in data and "metadata" in data:
        data["source_metadata"] = data.pop("metadata")
    if force_source:
        data["source"] = force_source
        metadata = data.get("source_metadata")
        if isinstance(metadata, dict):
            data["source_metadata"] = {k: v for k, v in metadata.items() if k != "source"}
    return data


class IngestionPipeline:
    """Pipeline for turning raw feedback records into pending feedback items."""

    def __init__(self, config: Settings, sql_client: Optional[SQLClient] = None):
        """
        Initialize the ingestion pipeline.

        Args:
            config: Application settings
            sql_client: Persistence client (built from config if None)
        """
        self.config = config
        self.sql_client = sql_client or SQLClient(config)

    def build_item(self, raw: RawFeedback) -> FeedbackItem:
        """Score a validated record and build its pending feedback item."""
        metadata = raw.source_metadata
        severity = normalize_severity(
            raw.source,
            metadata,
            posted_at=metadata.posted_at,
            content=raw.content,
        )
        return FeedbackItem(
            source=raw.source,
            content=raw.content,
            source_metadata=metadata,
            normalized_severity=severity,
            keywords=extract_keywords(raw.content),
        )

    def run(
        self,
        records: Iterable[Dict[str, Any]],
        skip_duplicates: bool = True,
        force_source: Optional[str] = None,
    ) -> IngestResult:
        """
        Execute the ingestion pipeline.

        Invalid records and failed inserts are reported in errors and do not
        stop the rest of the batch.

        Args:
            records: Raw feedback dicts
            skip_duplicates: Skip records whose first 200 characters are already stored
            force_source: Store every record under this source

        Returns:
            IngestResult with processing statistics
        """
        if force_source:
            force_source = FeedbackSource(force_source).value

        result = IngestResult()
        seen_previews: Set[str] = set()

        try:
            self.sql_client.connect()

            for index, record in enumerate(records):
                result.items_processed += 1

                try:
                    raw = RawFeedback.model_validate(_prepare_record(record, force_source))
                except ValidationError as e:
                    logger.warning(f"Record {index} rejected: {e.error_count()} validation errors")
                    result.errors.append(f"Record {index}: invalid feedback ({e.error_count()} validation errors)")
                    continue

                item = self.build_item(raw)

                try:
                    if skip_duplicates:
                        if item.content_preview in seen_previews or \
                                self.sql_client.find_feedback_by_preview(item.content_preview):
                            logger.debug(f"Record {index} is a duplicate, skipping")
                            result.items_skipped += 1
                            continue

                    self.sql_client.insert_feedback([item])
                except Exception as e:
                    logger.error(f"Failed to save record {index}: {e}")
                    result.errors.append(f"Record {index}: failed to save ({e})")
                    continue

                seen_previews.add(item.content_preview)
                result.items_saved += 1
                result.saved_ids.append(item.feedback_id)

        finally:
            self.sql_client.close()

        result.success = not result.errors or result.items_saved > 0
        logger.info(
            f"Ingestion complete: {result.items_processed} processed, {result.items_saved} saved, "
            f"{result.items_skipped} skipped, {len(result.errors)} errors"
        )
        return result


def load_records(path: Path) -> List[Dict[str, Any]]:
    """Read records from a JSON array file or a JSON Lines file."""
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        return [json.loads(line) for line in text.splitlines() if line.strip()]

    data = json.loads(text)
    if isinstance(data, dict):
        # {"records": [...]} or a single record
        return data.get("records", [data])
    return data


def main():
    """Main entry point for running the ingestion pipeline with CLI arguments."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description='Ingest raw feedback records (JSON or JSON Lines) as pending feedback.'
    )
    parser.add_argument('--file', type=Path, required=True, help='Path to a .json or .jsonl file')
    parser.add_argument('--source', choices=[s.value for s in FeedbackSource],
                        help='Store every record under this source')
    parser.add_argument('--keep-duplicates', action='store_true',
                        help='Store records even if their content is already known')

    args = parser.parse_args()

    if not args.file.exists():
        parser.error(f"File not found: {args.file}")

    records = load_records(args.file)

    config = Settings()
    pipeline = IngestionPipeline(config)
    result = pipeline.run(
        records,
        skip_duplicates=not args.keep_duplicates,
        force_source=args.source,
    )

    print("\n" + "="*60)
    print("INGESTION PIPELINE RESULTS")
    print("="*60)
    print(f"Records processed: {result.items_processed}")
    print(f"Items saved: {result.items_saved}")
    print(f"Duplicates skipped: {result.items_skipped}")
    print(f"Errors: {len(result.errors)}")
    for error in result.errors:
        print(f"  - {error}")
    print("="*60)


if __name__ == "__main__":
    main()
