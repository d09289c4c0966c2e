"""Value types shared by the review pipeline."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReviewStatus(str, Enum):
    """Lifecycle states of a review."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IssueCategory(str, Enum):
    SECURITY = "security"
    PERFORMANCE = "performance"
    STYLE = "style"
    BUG = "bug"
    BEST_PRACTICE = "best_practice"
    OTHER = "other"


_CATEGORY_VALUES = frozenset(category.value for category in IssueCategory)

# Lower rank is more severe.
SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.WARNING: 1,
    Severity.INFO: 2,
}


# Source control


class PullRequestInfo(BaseModel):
    """Pull request metadata needed to create a review."""

    number: int
    title: str = ""
    body: Optional[str] = None
    url: Optional[str] = None
    author: str = "unknown"
    head_sha: str
    base_sha: Optional[str] = None
    state: Optional[str] = None


class PullRequestFile(BaseModel):
    """One changed file of a pull request."""

    filename: str
    status: str = "modified"
    patch: Optional[str] = None
    additions: int = 0
    deletions: int = 0


# Analysis


class AnalysisFile(BaseModel):
    """A file selected for analysis."""

    filename: str
    patch: str
    language: str


class PRContext(BaseModel):
    title: str
    description: Optional[str] = None
    author: str


class AnalyzedIssue(BaseModel):
    """A single finding returned by the analysis collaborator."""

    file_path: str
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    severity: Severity
    category: IssueCategory = IssueCategory.OTHER
    title: str
    description: str = ""
    suggestion: Optional[str] = None
    code_snippet: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value):
        if isinstance(value, str):
            value = value.strip().lower().replace("-", "_").replace(" ", "_")
            if value in _CATEGORY_VALUES:
                return value
        return IssueCategory.OTHER


class AnalysisMetrics(BaseModel):
    files_analyzed: int = 0
    lines_analyzed: int = 0
    processing_time_ms: int = 0


class AnalysisResult(BaseModel):
    """Parsed output of one analysis call."""

    summary: str
    issues: list[AnalyzedIssue] = Field(default_factory=list)
    metrics: AnalysisMetrics = Field(default_factory=AnalysisMetrics)


# Settings


class LanguageSettings(BaseModel):
    """Per-language analysis profile."""

    enabled: bool = True
    linting_enabled: bool = True
    max_file_size: int = Field(default=100000, ge=0)
    exclude_patterns: list[str] = Field(default_factory=list)


class CustomRule(BaseModel):
    """User-defined rule passed to the analysis prompt."""

    id: str
    name: str
    pattern: str
    message: str
    severity: Severity = Severity.WARNING
    category: IssueCategory = IssueCategory.OTHER
    enabled: bool = True


class ReviewSettings(BaseModel):
    """Effective settings used to run one analysis."""

    enabled_categories: list[IssueCategory]
    severity_threshold: Severity = Severity.INFO
    ignored_files: list[str] = Field(default_factory=list)
    ignored_patterns: list[str] = Field(default_factory=list)
    custom_rules: list[CustomRule] = Field(default_factory=list)
    language_settings: dict[str, LanguageSettings] = Field(default_factory=dict)


class SettingsOverride(BaseModel):
    """One layer of the settings cascade.

    Every field is optional. A field that is absent (or null) leaves the
    lower layer's value alone; a field that is present replaces it wholesale,
    so an empty list clears the lower layer's list.
    """

    model_config = ConfigDict(extra="ignore")

    enabled_categories: Optional[list[IssueCategory]] = None
    severity_threshold: Optional[Severity] = None
    ignored_files: Optional[list[str]] = None
    ignored_patterns: Optional[list[str]] = None
    custom_rules: Optional[list[CustomRule]] = None
    language_settings: Optional[dict[str, LanguageSettings]] = None

    def present_fields(self) -> dict:
        """Fields explicitly set to a non-null value in this layer."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None
        }
