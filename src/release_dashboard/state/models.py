"""Data models for the release dashboard cache.

Every type serializes to the camelCase JSON shape served by the API and
written to the disk snapshot; ``from_dict`` accepts the same shape back.
"""

from dataclasses import dataclass, field, fields
from typing import Any

from release_dashboard.core.versions import extract_changeset

PLATFORMS = ("ios", "android")
BUILD_FAMILIES = ("dev", "alpha", "release")
SLOT_STATUSES = ("none", "queued", "building", "success", "failure", "unstable", "review")

# Serialized track name -> attribute on Tracks
TRACK_NAMES = {
    "dev": "dev",
    "alpha": "alpha",
    "release": "release",
    "prevRelease": "prev_release",
    "storeInternal": "store_internal",
    "storeAlpha": "store_alpha",
    "storeRollout": "store_rollout",
    "storeRelease": "store_release",
}
STORE_TRACKS = ("prevRelease", "storeInternal", "storeAlpha", "storeRollout", "storeRelease")


@dataclass(frozen=True)
class Job:
    name: str
    display_name: str
    platform: str
    bundle_id: str | None = None
    alpha_beta_group: str | None = None

    def to_dict(self) -> dict:
        return {
            "jenkinsJob": self.name,
            "displayName": self.display_name,
            "platform": self.platform,
            "bundleId": self.bundle_id,
            "alphaBetaGroup": self.alpha_beta_group,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            name=data["jenkinsJob"],
            display_name=data["displayName"],
            platform=data["platform"],
            bundle_id=data.get("bundleId"),
            alpha_beta_group=data.get("alphaBetaGroup"),
        )


@dataclass(frozen=True)
class CommitInfo:
    message: str
    author: str = "Unknown"
    version: str | None = None
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "author": self.author,
            "version": self.version,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommitInfo":
        version = data.get("version")
        return cls(
            message=data.get("message") or "",
            author=data.get("author") or "Unknown",
            version=None if version is None else str(version),
            timestamp=data.get("timestamp") or 0,
        )


@dataclass(frozen=True)
class BuildRecord:
    """One CI build observation. Completion swaps in a new record."""

    number: int
    job_name: str
    version: str | None
    result: str | None
    timestamp: int
    duration: int = 0
    branch: str = "main"
    build_type: str = "Debug"
    download_url: str | None = None
    error_analysis: str | None = None
    commits: tuple[CommitInfo, ...] = ()

    @property
    def changeset(self) -> int | None:
        return extract_changeset(self.version)

    @property
    def is_success(self) -> bool:
        return self.result == "SUCCESS"

    @property
    def in_progress(self) -> bool:
        return self.result is None

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "jobName": self.job_name,
            "version": self.version,
            "result": self.result,
            "timestamp": self.timestamp,
            "duration": self.duration,
            "branch": self.branch,
            "buildType": self.build_type,
            "downloadUrl": self.download_url,
            "errorAnalysis": self.error_analysis,
            "changeSet": [c.to_dict() for c in self.commits],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BuildRecord":
        version = data.get("version")
        return cls(
            number=data["number"],
            job_name=data.get("jobName") or "",
            version=None if version is None else str(version),
            result=data.get("result"),
            timestamp=data.get("timestamp") or 0,
            duration=data.get("duration") or 0,
            branch=data.get("branch") or "main",
            build_type=data.get("buildType") or "Debug",
            download_url=data.get("downloadUrl"),
            error_analysis=data.get("errorAnalysis"),
            commits=tuple(CommitInfo.from_dict(c) for c in data.get("changeSet") or []),
        )


def _record_or_none(data: dict | None) -> BuildRecord | None:
    return BuildRecord.from_dict(data) if data else None


@dataclass
class BuildPointers:
    """Current, last-success and oldest-success builds for one build family."""

    current: BuildRecord | None = None
    success: BuildRecord | None = None
    oldest_success: BuildRecord | None = None

    def records(self) -> list[BuildRecord]:
        seen: list[BuildRecord] = []
        for record in (self.current, self.success, self.oldest_success):
            if record is not None and record not in seen:
                seen.append(record)
        return seen

    def to_dict(self) -> dict:
        return {
            "current": self.current.to_dict() if self.current else None,
            "success": self.success.to_dict() if self.success else None,
            "oldestSuccess": self.oldest_success.to_dict() if self.oldest_success else None,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "BuildPointers":
        data = data or {}
        return cls(
            current=_record_or_none(data.get("current")),
            success=_record_or_none(data.get("success")),
            oldest_success=_record_or_none(data.get("oldestSuccess")),
        )


@dataclass
class PlatformBuilds:
    dev: BuildPointers = field(default_factory=BuildPointers)
    alpha: BuildPointers = field(default_factory=BuildPointers)
    release: BuildPointers = field(default_factory=BuildPointers)

    def family(self, name: str) -> BuildPointers:
        return getattr(self, name)

    def records(self) -> list[BuildRecord]:
        out = []
        for name in BUILD_FAMILIES:
            out.extend(self.family(name).records())
        return out

    def to_dict(self) -> dict:
        return {name: self.family(name).to_dict() for name in BUILD_FAMILIES}

    @classmethod
    def from_dict(cls, data: dict | None) -> "PlatformBuilds":
        data = data or {}
        return cls(**{name: BuildPointers.from_dict(data.get(name)) for name in BUILD_FAMILIES})


@dataclass
class PlatformSlot:
    """One platform's view of a track slot."""

    status: str = "none"
    version: str | None = None
    url: str | None = None
    date: Any = None
    download_url: str | None = None
    success_version: str | None = None
    success_url: str | None = None
    build_start_time: int | None = None
    estimated_duration: int | None = None
    error_analysis: str | None = None
    status_reason: str | None = None
    stage_info: dict | None = None
    build_id: str | None = None
    version_string: str | None = None
    version_code: int | None = None
    user_fraction: float | None = None
    country_targeting: list[str] | None = None
    active_users: int | None = None


_SLOT_FIELDS = [f.name for f in fields(PlatformSlot) if f.name != "status"]


def _flat_key(platform: str, name: str) -> str:
    return platform + "".join(part.title() for part in name.split("_"))


@dataclass
class TrackSlot:
    ios: PlatformSlot | None = None
    android: PlatformSlot | None = None

    def get(self, platform: str) -> PlatformSlot | None:
        return getattr(self, platform)

    def set(self, platform: str, slot: PlatformSlot | None):
        setattr(self, platform, slot)

    def to_dict(self) -> dict:
        """Flatten to ``{ios, iosVersion, ..., android, androidVersion, ...}``."""
        out: dict = {}
        for platform in PLATFORMS:
            slot = self.get(platform)
            out[platform] = slot.status if slot else None
            for name in _SLOT_FIELDS:
                out[_flat_key(platform, name)] = getattr(slot, name) if slot else None
        return out

    @classmethod
    def from_dict(cls, data: dict | None) -> "TrackSlot":
        data = data or {}
        slot = cls()
        for platform in PLATFORMS:
            status = data.get(platform)
            if status is None:
                continue
            values = {}
            for name in _SLOT_FIELDS:
                values[name] = data.get(_flat_key(platform, name))
            slot.set(platform, PlatformSlot(status=status, **values))
        return slot


@dataclass
class Tracks:
    dev: TrackSlot = field(default_factory=TrackSlot)
    alpha: TrackSlot = field(default_factory=TrackSlot)
    release: TrackSlot = field(default_factory=TrackSlot)
    prev_release: TrackSlot = field(default_factory=TrackSlot)
    store_internal: TrackSlot = field(default_factory=TrackSlot)
    store_alpha: TrackSlot = field(default_factory=TrackSlot)
    store_rollout: TrackSlot = field(default_factory=TrackSlot)
    store_release: TrackSlot = field(default_factory=TrackSlot)

    def slot(self, name: str) -> TrackSlot:
        """Look up a slot by its serialized name (``storeRollout``)."""
        return getattr(self, TRACK_NAMES[name])

    def to_dict(self) -> dict:
        return {name: getattr(self, attr).to_dict() for name, attr in TRACK_NAMES.items()}

    @classmethod
    def from_dict(cls, data: dict | None) -> "Tracks":
        data = data or {}
        return cls(**{attr: TrackSlot.from_dict(data.get(name)) for name, attr in TRACK_NAMES.items()})


@dataclass
class Branch:
    name: str
    ios: PlatformBuilds = field(default_factory=PlatformBuilds)
    android: PlatformBuilds = field(default_factory=PlatformBuilds)
    timestamp: int = 0
    version: str | None = None
    commits: list[CommitInfo] = field(default_factory=list)
    all_commits: list[CommitInfo] = field(default_factory=list)
    download_url: str | None = None
    vcs_changeset: str | None = None
    tracks: Tracks = field(default_factory=Tracks)

    def builds(self, platform: str) -> PlatformBuilds:
        return getattr(self, platform)

    def to_dict(self) -> dict:
        return {
            "branch": self.name,
            "ios": self.ios.to_dict(),
            "android": self.android.to_dict(),
            "timestamp": self.timestamp,
            "version": self.version,
            "commits": [c.to_dict() for c in self.commits],
            "allCommits": [c.to_dict() for c in self.all_commits],
            "downloadUrl": self.download_url,
            "vcsChangeset": self.vcs_changeset,
            "tracks": self.tracks.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Branch":
        return cls(
            name=data["branch"],
            ios=PlatformBuilds.from_dict(data.get("ios")),
            android=PlatformBuilds.from_dict(data.get("android")),
            timestamp=data.get("timestamp") or 0,
            version=data.get("version"),
            commits=[CommitInfo.from_dict(c) for c in data.get("commits") or []],
            all_commits=[CommitInfo.from_dict(c) for c in data.get("allCommits") or []],
            download_url=data.get("downloadUrl"),
            vcs_changeset=data.get("vcsChangeset"),
            tracks=Tracks.from_dict(data.get("tracks")),
        )


@dataclass
class Project:
    id: str
    display_name: str
    jobs: list[Job] = field(default_factory=list)
    branches: list[Branch] = field(default_factory=list)
    icon_url: str | None = None
    error: str | None = None
    ios_dau: int | None = None
    android_dau: int | None = None

    def job_for(self, platform: str) -> Job | None:
        return next((j for j in self.jobs if j.platform == platform), None)

    def find_branch(self, name: str) -> Branch | None:
        return next((b for b in self.branches if b.name == name), None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "iconUrl": self.icon_url,
            "jobs": [j.to_dict() for j in self.jobs],
            "branches": [b.to_dict() for b in self.branches],
            "error": self.error,
            "iosDau": self.ios_dau,
            "androidDau": self.android_dau,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            id=data["id"],
            display_name=data.get("displayName") or data["id"],
            jobs=[Job.from_dict(j) for j in data.get("jobs") or []],
            branches=[Branch.from_dict(b) for b in data.get("branches") or []],
            icon_url=data.get("iconUrl"),
            error=data.get("error"),
            ios_dau=data.get("iosDau"),
            android_dau=data.get("androidDau"),
        )


@dataclass
class CacheMeta:
    job_build_numbers: dict[str, int] = field(default_factory=dict)
    last_full_refresh: str | None = None

    def to_dict(self) -> dict:
        return {
            "jobBuildNumbers": dict(self.job_build_numbers),
            "lastFullRefresh": self.last_full_refresh,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "CacheMeta":
        data = data or {}
        return cls(
            job_build_numbers={k: int(v) for k, v in (data.get("jobBuildNumbers") or {}).items()},
            last_full_refresh=data.get("lastFullRefresh"),
        )


@dataclass
class CacheRoot:
    last_updated: str | None = None
    meta: CacheMeta = field(default_factory=CacheMeta)
    projects: list[Project] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "lastUpdated": self.last_updated,
            "meta": self.meta.to_dict(),
            "projects": [p.to_dict() for p in self.projects],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheRoot":
        return cls(
            last_updated=data.get("lastUpdated"),
            meta=CacheMeta.from_dict(data.get("meta")),
            projects=[Project.from_dict(p) for p in data.get("projects") or []],
        )


# ── CI reader results ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class QueuedBuild:
    job_name: str
    branch: str = "main"
    build_type: str = "Debug"
    id: int | None = None


@dataclass(frozen=True)
class BuildStatus:
    job_name: str
    number: int
    result: str | None
    timestamp: int
    duration: int = 0


@dataclass
class PipelineStages:
    status: str | None
    current_stage: str | None
    last_completed_stage: str | None
    total_stages: int
    completed_count: int
    stages: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "current": self.current_stage or self.last_completed_stage,
            "lastCompleted": self.last_completed_stage,
            "totalStages": self.total_stages,
            "completedCount": self.completed_count,
            "stages": list(self.stages),
        }
