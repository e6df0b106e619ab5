"""Core type definitions for depot_mirror."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class ArtifactType(StrEnum):
    """Kinds of files stored on a title branch."""
    SCRIPT = "script"
    MANIFEST = "manifest-binary"
    METADATA = "metadata-json"
    OTHER = "other"

    @classmethod
    def from_filename(cls, name: str) -> ArtifactType:
        """Classify a branch file by its extension."""
        lower = name.lower()
        if lower.endswith(".lua"):
            return cls.SCRIPT
        if lower.endswith(".manifest"):
            return cls.MANIFEST
        if lower.endswith(".json"):
            return cls.METADATA
        return cls.OTHER


class DlcType(StrEnum):
    """DLC classification for completeness accounting."""
    CONTENT = "content"
    EXTRA = "extra"


class SyncStatus(StrEnum):
    """Terminal states of one title reconciliation."""
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DRIFTED = "drifted"


class TitleRecord(BaseModel):
    """Last-known upstream state for one title, as confirmed on its branch."""
    title_id: str = Field(..., description="Upstream title identifier")
    name: str | None = Field(None, description="Display name, if known")
    depot_manifests: dict[str, str] = Field(
        default_factory=dict,
        description="Depot ID to manifest ID, only for persisted manifests"
    )
    build_id: str | None = Field(None, description="Public-track build identifier")
    last_synced_at: datetime | None = Field(None, description="Last successful write")
    auto_updated: bool = Field(default=False, description="Written by the synchronizer")


class ResolvedTitle(BaseModel):
    """Upstream view of a title's public release track."""
    title_id: str = Field(..., description="Upstream title identifier")
    manifests: dict[str, str] = Field(default_factory=dict, description="Depot ID to manifest ID")
    build_id: str | None = Field(None, description="Public-track build identifier")
    name: str | None = Field(None, description="Title name from the info payload")
    depots: dict[str, dict] = Field(
        default_factory=dict,
        description="Raw depot table restricted to numeric depot keys"
    )


class DepotInfo(BaseModel):
    """One upstream-declared content unit, derived from branch content."""
    depot_id: str
    manifest_id: str | None = None
    size: int | None = None
    download_size: int | None = None
    oslist: str | None = None
    language: str | None = None
    is_shared: bool = False
    shared_from_app: str | None = None
    is_optional: bool = False
    has_decryption_key: bool = False


class DepotSummary(BaseModel):
    """Depot table of a branch with coverage totals."""
    title_id: str
    source: str = Field(..., description="'metadata' or 'files'")
    depots: list[DepotInfo] = Field(default_factory=list)
    total_depots: int = 0
    depots_with_manifests: int = 0
    shared_depots: int = 0
    missing_manifests: list[str] = Field(default_factory=list)
    completion_percent: float = 100.0
    dlc_app_ids: list[int] = Field(default_factory=list, description="DLC listed in the metadata")


class DlcInfo(BaseModel):
    """Tracking state of one downloadable-content title."""
    app_id: int
    name: str
    is_tracked: bool = False
    has_own_depot: bool = False
    dlc_type: DlcType = DlcType.CONTENT


class DlcAnalysis(BaseModel):
    """Result of a DLC completeness query."""
    title_id: str
    total_dlc: int = 0
    content_dlc_count: int = 0
    extra_dlc_count: int = 0
    tracked_dlc: int = 0
    tracked_content_dlc: int = 0
    missing_dlc: int = 0
    completion_percent: float = 100.0
    dlc_list: list[DlcInfo] = Field(default_factory=list)


class ArtifactFile(BaseModel):
    """A file on a title branch. Content is fetched on first read."""
    name: str
    size: int = 0
    type: ArtifactType = ArtifactType.OTHER
    sha: str | None = None
    download_url: str | None = None

    model_config = ConfigDict(extra="ignore")

    _content: bytes | None = PrivateAttr(default=None)
    _loader: Callable[[], bytes] | None = PrivateAttr(default=None)

    def bind_loader(self, loader: Callable[[], bytes]) -> None:
        """Attach the callable used to fetch content lazily."""
        self._loader = loader

    @property
    def content(self) -> bytes | None:
        """Content if it has already been fetched."""
        return self._content

    def read(self) -> bytes:
        """Return file content, fetching it once if needed.

        Raises:
            RuntimeError: If no loader was bound and nothing is cached
        """
        if self._content is None:
            if self._loader is None:
                raise RuntimeError(f"No content loader bound for {self.name}")
            self._content = self._loader()
        return self._content


class CommitResult(BaseModel):
    """Outcome of an atomic multi-file commit."""
    title_id: str
    commit_sha: str
    parent_sha: str
    created: bool = Field(..., description="True if the branch was created by this commit")
    files: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class SyncOutcome(BaseModel):
    """Result of reconciling one title."""
    title_id: str
    status: SyncStatus
    reason: str = ""
    updated_depots: dict[str, str] = Field(default_factory=dict)
    pending_depots: dict[str, str] = Field(default_factory=dict)
    commit_sha: str | None = None
    files: list[str] = Field(default_factory=list)
    added_dlc: list[int] = Field(default_factory=list)
    attempts: int = 0
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """True for the non-failure terminal states."""
        return self.status in (SyncStatus.UPDATED, SyncStatus.UP_TO_DATE, SyncStatus.DRIFTED)


class BatchSummary(BaseModel):
    """Aggregate of one catalog-wide reconciliation run."""
    batch_id: str
    started_at: datetime
    finished_at: datetime | None = None
    total: int = 0
    updated: int = 0
    up_to_date: int = 0
    cancelled: bool = False
    failures: list[SyncOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        """Number of titles that did not reconcile."""
        return len(self.failures)
