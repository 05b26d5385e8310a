"""Tests for deriving track slots from branch builds."""

from release_dashboard.core.branches import group_builds_by_branch
from release_dashboard.core.tracks import (
    StoreWebhookStatus,
    build_branch_tracks,
    carry_over_store_slots,
    is_queued,
    map_ci_status,
)
from release_dashboard.state.models import BuildRecord, Job, PlatformSlot, QueuedBuild, Tracks

IOS_JOB = Job("game-ios", "Game", "ios", bundle_id="com.example.game")
ANDROID_JOB = Job("game-android", "Game", "android", bundle_id="com.example.game")
JOBS = [IOS_JOB, ANDROID_JOB]


def _url(job, number):
    return f"https://ci.example.com/job/{job}/{number}/"


def _build(number, version, result="SUCCESS", job="game-ios", build_type="Debug", timestamp=None, duration=60000):
    return BuildRecord(
        number=number,
        job_name=job,
        version=version,
        result=result,
        timestamp=timestamp if timestamp is not None else number * 1000,
        duration=duration,
        build_type=build_type,
    )


def _branch(ios=(), android=()):
    return group_builds_by_branch(list(ios), list(android))[0]


class TestMapCiStatus:
    def test_mapping(self):
        assert map_ci_status(None) == "building"
        assert map_ci_status("SUCCESS") == "success"
        assert map_ci_status("FAILURE") == "failure"
        assert map_ci_status("UNSTABLE") == "unstable"
        assert map_ci_status("ABORTED") == "none"
        assert map_ci_status("NOT_BUILT") == "none"


class TestIsQueued:
    def test_matches_job_branch_and_type(self):
        queue = [QueuedBuild("game-ios", "main", "debug")]
        assert is_queued(queue, IOS_JOB, "main", "Debug")
        assert not is_queued(queue, IOS_JOB, "main", "Release")
        assert not is_queued(queue, ANDROID_JOB, "main", "Debug")
        assert not is_queued(queue, IOS_JOB, "feature", "Debug")


class TestBuildBranchTracks:
    def test_ci_slots(self):
        branch = _branch(
            ios=[_build(1, "1.0.100"), _build(2, "1.0.101", build_type="Release", result="FAILURE")],
            android=[_build(7, "1.0.100", job="game-android")],
        )
        tracks = build_branch_tracks(branch, JOBS, _url)

        assert tracks.dev.ios.status == "success"
        assert tracks.dev.ios.version == "1.0.100"
        assert tracks.dev.ios.url == _url("game-ios", 1)
        assert tracks.dev.android.status == "success"
        assert tracks.release.ios.status == "failure"
        assert tracks.release.android is None
        assert tracks.alpha.ios is None

    def test_building_slot_gets_timing_from_last_success(self):
        branch = _branch(ios=[
            _build(1, "1.0.100", duration=120000),
            _build(2, "1.0.101", result=None, timestamp=50000),
        ])
        slot = build_branch_tracks(branch, JOBS, _url).dev.ios
        assert slot.status == "building"
        assert slot.build_start_time == 50000
        assert slot.estimated_duration == 120000
        assert slot.success_version == "1.0.100"
        assert slot.success_url == _url("game-ios", 1)

    def test_failed_slot_points_at_last_success(self):
        branch = _branch(ios=[_build(1, "1.0.100"), _build(2, "1.0.101", result="FAILURE")])
        slot = build_branch_tracks(branch, JOBS, _url).dev.ios
        assert slot.status == "failure"
        assert slot.success_version == "1.0.100"

    def test_queued_overrides_finished_build(self):
        branch = _branch(ios=[_build(1, "1.0.100")])
        queue = [QueuedBuild("game-ios", "main", "Debug")]
        tracks = build_branch_tracks(branch, JOBS, _url, queue=queue)
        assert tracks.dev.ios.status == "queued"
        assert tracks.dev.ios.version == "1.0.100"

    def test_queued_never_overrides_building(self):
        branch = _branch(ios=[_build(1, "1.0.100", result=None)])
        queue = [QueuedBuild("game-ios", "main", "Debug")]
        assert build_branch_tracks(branch, JOBS, _url, queue=queue).dev.ios.status == "building"

    def test_queued_without_any_build(self):
        branch = _branch(ios=[_build(1, "1.0.100")])
        queue = [QueuedBuild("game-ios", "main", "Release")]
        tracks = build_branch_tracks(branch, JOBS, _url, queue=queue)
        assert tracks.release.ios == PlatformSlot(status="queued")

    def test_alpha_ignores_queue(self):
        branch = _branch(ios=[_build(1, "1.0.100", build_type="Alpha")])
        queue = [QueuedBuild("game-ios", "main", "Alpha")]
        assert build_branch_tracks(branch, JOBS, _url, queue=queue).alpha.ios.status == "success"

    def test_store_slots_empty_without_webhook(self):
        tracks = build_branch_tracks(_branch(ios=[_build(1, "1.0.100")]), JOBS, _url)
        for name in ("storeInternal", "storeAlpha", "storeRollout", "storeRelease", "prevRelease"):
            slot = tracks.slot(name)
            assert slot.ios is None and slot.android is None

    def test_webhook_status_fills_store_slot(self):
        status = {
            "appStore": StoreWebhookStatus("in_review", "appstore", version="1.0.100"),
            "googlePlay": StoreWebhookStatus("uploaded", "internal", version="1.0.100"),
        }
        tracks = build_branch_tracks(_branch(ios=[_build(1, "1.0.100")]), JOBS, _url, store_status=status)
        assert tracks.store_release.ios.status == "review"
        assert tracks.store_internal.android.status == "success"
        assert tracks.store_internal.ios is None

    def test_webhook_date_is_epoch_ms(self):
        status = {"googlePlay": StoreWebhookStatus("uploaded", "internal", updated_at="2024-01-01T00:00:00Z")}
        tracks = build_branch_tracks(_branch(ios=[_build(1, "1.0.100")]), JOBS, _url, store_status=status)
        assert tracks.store_internal.android.date == 1704067200000

    def test_webhook_date_unparseable(self):
        status = {"googlePlay": StoreWebhookStatus("uploaded", "internal", updated_at="yesterday")}
        tracks = build_branch_tracks(_branch(ios=[_build(1, "1.0.100")]), JOBS, _url, store_status=status)
        assert tracks.store_internal.android.date is None

    def test_job_missing_for_platform(self):
        branch = _branch(ios=[_build(1, "1.0.100")], android=[_build(5, "1.0.100", job="game-android")])
        tracks = build_branch_tracks(branch, [IOS_JOB], _url)
        assert tracks.dev.android is None


class TestCarryOverStoreSlots:
    def test_keeps_previous_store_data(self):
        previous = Tracks()
        previous.store_release.ios = PlatformSlot(status="success", version="1.0.90")
        previous.dev.ios = PlatformSlot(status="failure")
        tracks = Tracks()
        carry_over_store_slots(tracks, previous)
        assert tracks.store_release.ios.version == "1.0.90"
        assert tracks.dev.ios is None

    def test_new_value_wins(self):
        previous = Tracks()
        previous.store_alpha.android = PlatformSlot(status="success", version="old")
        tracks = Tracks()
        tracks.store_alpha.android = PlatformSlot(status="review", version="new")
        carry_over_store_slots(tracks, previous)
        assert tracks.store_alpha.android.version == "new"

    def test_copies_slots(self):
        previous = Tracks()
        previous.store_release.ios = PlatformSlot(status="success")
        tracks = Tracks()
        carry_over_store_slots(tracks, previous)
        assert tracks.store_release.ios is not previous.store_release.ios
