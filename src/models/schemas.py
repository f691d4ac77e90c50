from pydantic import BaseModel, Field, ConfigDict, model_validator
from datetime import datetime, timezone
from typing import Optional, List, Union, Literal, Any, Annotated
from enum import Enum
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class FeedbackSource(str, Enum):
    APP_STORE = "app_store"
    PRODUCT_HUNT = "product_hunt"
    REDDIT = "reddit"
    QUORA = "quora"
    STACK_OVERFLOW = "stack_overflow"
    MANUAL_UPLOAD = "manual_upload"
    CUSTOM = "custom"


class FeedbackStatus(str, Enum):
    PENDING = "pending"
    CLUSTERED = "clustered"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class FeedbackType(str, Enum):
    BUG = "bug"
    FEATURE_REQUEST = "feature_request"
    COMPLAINT = "complaint"
    PRAISE = "praise"
    QUESTION = "question"
    UNKNOWN = "unknown"


class ClusterStatus(str, Enum):
    ACTIVE = "active"
    REVIEWED = "reviewed"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    WONT_FIX = "wont_fix"
    REJECTED = "rejected"


# The automated pipeline never touches clusters in these states again.
TERMINAL_CLUSTER_STATUSES = frozenset({
    ClusterStatus.RESOLVED.value,
    ClusterStatus.WONT_FIX.value,
    ClusterStatus.REJECTED.value,
})
OPEN_CLUSTER_STATUSES = (ClusterStatus.ACTIVE.value, ClusterStatus.REVIEWED.value)


class ClusterPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Trend(str, Enum):
    RISING = "rising"
    STABLE = "stable"
    DECLINING = "declining"


# ---------------------------------------------------------------------------
# Source metadata: one variant per source, selected by the `source` tag
# ---------------------------------------------------------------------------

class SourceMetadata(BaseModel):
    """Fields shared by every source. Unknown fields are kept as extras."""
    model_config = ConfigDict(extra="allow", frozen=True)

    author: Optional[str] = None
    author_url: Optional[str] = None
    post_url: Optional[str] = None
    posted_at: Optional[datetime] = None


class AppStoreMetadata(SourceMetadata):
    source: Literal["app_store"] = "app_store"
    star_rating: Optional[float] = None
    app_version: Optional[str] = None


class ProductHuntMetadata(SourceMetadata):
    source: Literal["product_hunt"] = "product_hunt"
    upvotes: int = 0
    maker_reply: bool = False


class RedditMetadata(SourceMetadata):
    source: Literal["reddit"] = "reddit"
    reddit_score: int = 0
    comment_count: int = 0
    subreddit: Optional[str] = None


class StackOverflowMetadata(SourceMetadata):
    source: Literal["stack_overflow"] = "stack_overflow"
    so_score: int = 0
    view_count: int = 0
    is_accepted: bool = False


class QuoraMetadata(SourceMetadata):
    source: Literal["quora"] = "quora"
    quora_upvotes: int = 0
    follower_count: int = 0


class ManualUploadMetadata(SourceMetadata):
    source: Literal["manual_upload"] = "manual_upload"
    file_name: Optional[str] = None


class CustomMetadata(SourceMetadata):
    source: Literal["custom"] = "custom"


FeedbackMetadata = Annotated[
    Union[
        AppStoreMetadata,
        ProductHuntMetadata,
        RedditMetadata,
        StackOverflowMetadata,
        QuoraMetadata,
        ManualUploadMetadata,
        CustomMetadata,
    ],
    Field(discriminator="source"),
]


def _tag_metadata(data: Any) -> Any:
    """Copy the record's source into a metadata dict that lacks one."""
    if not isinstance(data, dict):
        return data
    source = data.get("source")
    metadata = data.get("source_metadata")
    if metadata is None:
        metadata = {}
    if isinstance(metadata, dict) and "source" not in metadata and source is not None:
        metadata = {**metadata, "source": getattr(source, "value", source)}
    return {**data, "source_metadata": metadata}


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class RawFeedback(BaseModel):
    """Feedback as handed over by a scraper, parser or direct upload."""
    model_config = ConfigDict(use_enum_values=True)

    source: FeedbackSource
    content: str = Field(..., min_length=1, max_length=50000)
    source_metadata: FeedbackMetadata

    @model_validator(mode="before")
    @classmethod
    def tag_metadata(cls, data: Any) -> Any:
        return _tag_metadata(data)


class FeedbackItem(BaseModel):
    """One atomic piece of ingested feedback."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True, frozen=True)

    feedback_id: str = Field(default_factory=_new_id)
    source: FeedbackSource
    content: str = Field(..., min_length=1, max_length=50000)
    source_metadata: FeedbackMetadata
    normalized_severity: int = Field(50, ge=0, le=100)
    feedback_type: FeedbackType = FeedbackType.UNKNOWN
    status: FeedbackStatus = FeedbackStatus.PENDING
    sentiment_score: Optional[float] = Field(None, ge=-1.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)
    summary: Optional[str] = None
    cluster_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="before")
    @classmethod
    def tag_metadata(cls, data: Any) -> Any:
        return _tag_metadata(data)

    @model_validator(mode="after")
    def check_metadata_source(self) -> "FeedbackItem":
        if self.source_metadata.source != self.source:
            raise ValueError(
                f"source_metadata is tagged '{self.source_metadata.source}' "
                f"but the item source is '{self.source}'"
            )
        return self

    @property
    def content_preview(self) -> str:
        """First 200 characters, the key used for duplicate detection."""
        return self.content[:200]


class ClassificationResult(BaseModel):
    """Per-item output of the classification capability."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True, extra="ignore")

    feedback_type: FeedbackType = FeedbackType.UNKNOWN
    sentiment_score: float = Field(0.0, ge=-1.0, le=1.0)
    technical_severity: float = Field(50, ge=0, le=100)
    keywords: List[str] = Field(default_factory=list)
    summary: str = ""

    @classmethod
    def fallback(cls) -> "ClassificationResult":
        """Result used for every item of a batch whose response is unusable."""
        return cls()


# ---------------------------------------------------------------------------
# Clusters
# ---------------------------------------------------------------------------

class ClusterSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    root_cause: Optional[str] = None
    suggested_fix: Optional[str] = None
    affected_area: Optional[str] = None


class ClusterMetrics(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True, frozen=True)

    total_items: int = 0
    avg_severity: int = 0
    max_severity: int = 0
    sources: List[str] = Field(default_factory=list)
    first_seen: datetime = Field(default_factory=_utcnow)
    last_seen: datetime = Field(default_factory=_utcnow)
    trend: Trend = Trend.STABLE


class Cluster(BaseModel):
    """A group of feedback items representing one actionable issue."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True, frozen=True)

    cluster_id: str = Field(default_factory=_new_id)
    summary: ClusterSummary
    metrics: ClusterMetrics = Field(default_factory=ClusterMetrics)
    aggregate_severity: int = Field(0, ge=0, le=100)
    priority: ClusterPriority = ClusterPriority.LOW
    status: ClusterStatus = ClusterStatus.ACTIVE
    feedback_items: List[str] = Field(default_factory=list)
    alert_sent: bool = False
    alert_sent_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CLUSTER_STATUSES


class AnalysisResult(BaseModel):
    """Outcome of one analysis run."""
    success: bool = True
    items_classified: int = 0
    clusters_created: int = 0
    alerts_sent: int = 0
    errors: List[str] = Field(default_factory=list)


class IngestResult(BaseModel):
    """Outcome of one ingestion call."""
    success: bool = True
    items_processed: int = 0
    items_saved: int = 0
    items_skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    saved_ids: List[str] = Field(default_factory=list)

