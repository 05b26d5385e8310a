"""Build the eight-slot track view for a branch from its CI builds."""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from release_dashboard.state.models import (
    PLATFORMS,
    STORE_TRACKS,
    Branch,
    BuildPointers,
    Job,
    PlatformSlot,
    QueuedBuild,
    Tracks,
)

CI_STATUS = {
    "SUCCESS": "success",
    "FAILURE": "failure",
    "UNSTABLE": "unstable",
    "ABORTED": "none",
}

# Legacy webhook: (store, reported track) -> slot
WEBHOOK_TRACKS = {
    ("appStore", "testflight"): "storeInternal",
    ("appStore", "testflight_alpha"): "storeAlpha",
    ("appStore", "appstore"): "storeRelease",
    ("googlePlay", "internal"): "storeInternal",
    ("googlePlay", "alpha"): "storeAlpha",
    ("googlePlay", "production"): "storeRelease",
}
WEBHOOK_PLATFORMS = {"appStore": "ios", "googlePlay": "android"}

WEBHOOK_STATUS = {
    "uploaded": "success",
    "live": "success",
    "in_review": "review",
    "rejected": "failure",
}

# Families whose slot flips to "queued" when a matching build waits in the queue
QUEUED_BUILD_TYPES = {"dev": "Debug", "release": "Release"}

BuildUrl = Callable[[str, int], str]


@dataclass
class StoreWebhookStatus:
    """One store's last report from the upload webhook."""

    status: str
    track: str
    version: str | None = None
    download_url: str | None = None
    review_status: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "track": self.track,
            "version": self.version,
            "downloadUrl": self.download_url,
            "reviewStatus": self.review_status,
            "updatedAt": self.updated_at,
        }


def map_ci_status(result: str | None) -> str:
    """Map a CI build result to a slot status. None means still building."""
    if result is None:
        return "building"
    return CI_STATUS.get(result, "none")


def map_store_status(info: StoreWebhookStatus, track: str) -> str | None:
    """Slot status for a webhook report, or None when it concerns another track."""
    if info.track != track:
        return None
    return WEBHOOK_STATUS.get(info.status)


def _epoch_ms(timestamp: str | None) -> int | None:
    """ISO-8601 webhook time as epoch milliseconds, matching CI slot dates."""
    if not timestamp:
        return None
    try:
        return int(datetime.fromisoformat(timestamp.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return None


def is_queued(queue: Iterable[QueuedBuild], job: Job, branch: str, build_type: str) -> bool:
    return any(
        q.job_name == job.name and q.branch == branch and q.build_type.lower() == build_type.lower()
        for q in queue
    )


def _ci_slot(
    pointers: BuildPointers,
    job: Job,
    build_url: BuildUrl,
    queued: bool,
) -> PlatformSlot | None:
    build = pointers.current
    if build is None:
        return PlatformSlot(status="queued") if queued else None

    status = map_ci_status(build.result)
    if queued and status != "building":
        status = "queued"

    slot = PlatformSlot(
        status=status,
        version=build.version,
        url=build_url(job.name, build.number),
        date=build.timestamp,
        download_url=build.download_url,
        error_analysis=build.error_analysis,
    )

    success = pointers.success
    if status == "building":
        slot.build_start_time = build.timestamp
        if success and success.duration:
            slot.estimated_duration = success.duration

    if success and success.number != build.number:
        slot.success_version = success.version
        slot.success_url = build_url(job.name, success.number)

    return slot


def build_branch_tracks(
    branch: Branch,
    jobs: Iterable[Job],
    build_url: BuildUrl,
    queue: Iterable[QueuedBuild] = (),
    store_status: dict[str, StoreWebhookStatus] | None = None,
) -> Tracks:
    """Derive a branch's Tracks from its build pointers.

    Store slots are left empty except where the legacy webhook side-table
    (``{"appStore": ..., "googlePlay": ...}``) reports on them.
    """
    jobs = list(jobs)
    queue = list(queue)
    tracks = Tracks()

    for platform in PLATFORMS:
        job = next((j for j in jobs if j.platform == platform), None)
        if job is None:
            continue
        builds = branch.builds(platform)
        for family in ("dev", "alpha", "release"):
            queued_type = QUEUED_BUILD_TYPES.get(family)
            queued = queued_type is not None and is_queued(queue, job, branch.name, queued_type)
            slot = _ci_slot(builds.family(family), job, build_url, queued)
            tracks.slot(family).set(platform, slot)

    for store, info in (store_status or {}).items():
        platform = WEBHOOK_PLATFORMS.get(store)
        if platform is None:
            continue
        for (candidate, track), slot_name in WEBHOOK_TRACKS.items():
            if candidate != store:
                continue
            status = map_store_status(info, track)
            if status is None:
                continue
            tracks.slot(slot_name).set(
                platform,
                PlatformSlot(
                    status=status,
                    version=info.version,
                    date=_epoch_ms(info.updated_at),
                    download_url=info.download_url,
                ),
            )

    return tracks


def carry_over_store_slots(tracks: Tracks, previous: Tracks | None):
    """Keep store slots the previous Tracks had filled but the new one lacks."""
    if previous is None:
        return
    for name in STORE_TRACKS:
        new_slot = tracks.slot(name)
        old_slot = previous.slot(name)
        for platform in PLATFORMS:
            if new_slot.get(platform) is None and old_slot.get(platform) is not None:
                new_slot.set(platform, replace(old_slot.get(platform)))
