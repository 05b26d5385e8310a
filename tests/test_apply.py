"""Tests for merging store, VCS, analytics and pipeline data into tracks."""

import pytest

from release_dashboard.core.apply import (
    apply_analytics_data,
    apply_pipeline_stages,
    apply_store_data,
    apply_vcs_data,
)
from release_dashboard.core.branches import group_builds_by_branch
from release_dashboard.core.tracks import build_branch_tracks
from release_dashboard.integrations.analytics import UsersByVersion
from release_dashboard.integrations.app_store import AppStoreInfo, BetaBuild, PhasedRelease, StoreVersion
from release_dashboard.integrations.google_play import PlayRelease, PlayStoreInfo
from release_dashboard.state.models import (
    Branch,
    BuildRecord,
    CommitInfo,
    Job,
    PipelineStages,
    PlatformSlot,
    Project,
)


@pytest.fixture
def project():
    return Project(
        id="game",
        display_name="Game",
        jobs=[
            Job("game-ios", "Game", "ios", bundle_id="com.example.game"),
            Job("game-android", "Game", "android", bundle_id="com.example.game"),
        ],
        branches=[Branch(name="main"), Branch(name="feature/x")],
    )


def _app_store(**overrides):
    values = dict(
        bundle_id="com.example.game",
        live=StoreVersion("2.0.0", build="120", build_id="b-live", state="READY_FOR_SALE", created_date="2024-01-02"),
        prev_live=StoreVersion("1.9.0", build="110", build_id="b-prev", state="READY_FOR_SALE"),
        testflight=BetaBuild("2.1.0", "130", "b-tf", "2024-01-05", "VALID"),
    )
    values.update(overrides)
    return AppStoreInfo(**values)


class TestApplyStoreIos:
    def test_fills_internal_release_and_previous(self, project):
        assert apply_store_data(project, _app_store(), None)
        tracks = project.find_branch("main").tracks
        assert tracks.store_internal.ios.version == "2.1.0 (130)"
        assert tracks.store_internal.ios.status_reason == "TestFlight"
        assert tracks.store_release.ios.version == "2.0.0 (120)"
        assert tracks.store_release.ios.status_reason == "Live on App Store"
        assert tracks.prev_release.ios.version == "1.9.0 (110)"

    def test_only_main_branch_touched(self, project):
        apply_store_data(project, _app_store(), None)
        assert project.find_branch("feature/x").tracks.store_release.ios is None

    def test_no_main_branch(self, project):
        project.branches = [Branch(name="feature/x")]
        assert apply_store_data(project, _app_store(), None) is False

    def test_beta_group_build(self, project):
        info = _app_store(beta_groups={"Alpha": BetaBuild("2.1.0", "128", "b-alpha", "2024-01-04")})
        apply_store_data(project, info, None)
        slot = project.find_branch("main").tracks.store_alpha.ios
        assert slot.status == "success"
        assert slot.version == "2.1.0"
        assert slot.status_reason == "TestFlight Alpha"

    def test_job_beta_group_overrides_default(self, project):
        project.jobs[0] = Job("game-ios", "Game", "ios", bundle_id="com.example.game", alpha_beta_group="QA")
        info = _app_store(beta_groups={
            "Alpha": BetaBuild("2.1.0", "128", "b-alpha"),
            "QA": BetaBuild("2.1.0", "129", "b-qa"),
        })
        apply_store_data(project, info, None, beta_group="Alpha")
        assert project.find_branch("main").tracks.store_alpha.ios.build_id == "b-qa"

    def test_pending_version_shows_review(self, project):
        info = _app_store(pending=StoreVersion("2.1.0", build="130", build_id="b-tf", state="IN_REVIEW"))
        apply_store_data(project, info, None)
        slot = project.find_branch("main").tracks.store_alpha.ios
        assert slot.status == "review"
        assert slot.status_reason == "In Review"

    def test_phased_release(self, project):
        info = _app_store(rollout=PhasedRelease("2.0.0", "120", "b-live", "ACTIVE", day=3, user_fraction=0.1))
        apply_store_data(project, info, None)
        slot = project.find_branch("main").tracks.store_rollout.ios
        assert slot.status == "success"
        assert slot.user_fraction == 0.1
        assert slot.status_reason == "Phased Release (10%)"

    def test_paused_phased_release(self, project):
        info = _app_store(rollout=PhasedRelease("2.0.0", "120", "b-live", "PAUSED", day=2, user_fraction=0.05))
        apply_store_data(project, info, None)
        slot = project.find_branch("main").tracks.store_rollout.ios
        assert slot.status == "review"
        assert "Paused" in slot.status_reason

    def test_no_phased_release(self, project):
        apply_store_data(project, _app_store(), None)
        slot = project.find_branch("main").tracks.store_rollout.ios
        assert slot.status == "none"
        assert slot.version == "N/A"

    def test_missing_category_keeps_previous_slot(self, project):
        main = project.find_branch("main")
        main.tracks.store_release.ios = PlatformSlot(status="success", version="old")
        apply_store_data(project, _app_store(live=None, prev_live=None), None)
        assert main.tracks.store_release.ios.version == "old"

    def test_preserves_unrelated_slot_fields(self, project):
        main = project.find_branch("main")
        main.tracks.store_release.ios = PlatformSlot(status="success", active_users=42)
        apply_store_data(project, _app_store(), None)
        assert main.tracks.store_release.ios.active_users == 42
        assert main.tracks.store_release.ios.version == "2.0.0 (120)"


class TestApplyStoreAndroid:
    def _play(self, **overrides):
        values = dict(
            package_name="com.example.game",
            internal=PlayRelease("completed", "2.1.0", [2100]),
            alpha=PlayRelease("completed", "2.0.5", [2050]),
            production=PlayRelease("completed", "2.0.0", [2000]),
        )
        values.update(overrides)
        return PlayStoreInfo(**values)

    def test_tracks(self, project):
        apply_store_data(project, None, self._play())
        tracks = project.find_branch("main").tracks
        assert tracks.store_internal.android.version == "2.1.0"
        assert tracks.store_internal.android.version_code == 2100
        assert tracks.store_alpha.android.status_reason == "Rolled out"
        assert tracks.store_release.android.version == "2.0.0"
        assert tracks.store_rollout.android.status == "none"

    def test_global_rollout(self, project):
        apply_store_data(project, None, self._play(rollout=PlayRelease("inProgress", "2.0.1", [2010], 0.2)))
        slot = project.find_branch("main").tracks.store_rollout.android
        assert slot.status == "success"
        assert slot.user_fraction == 0.2
        assert slot.status_reason == "🌍 20% Global"

    def test_country_rollout_without_fraction_is_full(self, project):
        rollout = PlayRelease("inProgress", "2.0.1", [2010], None, ["MX"])
        apply_store_data(project, None, self._play(rollout=rollout))
        slot = project.find_branch("main").tracks.store_rollout.android
        assert slot.user_fraction == 1.0
        assert slot.status_reason == "🇲🇽 Mexico (100%)"
        assert slot.country_targeting == ["MX"]

    def test_halted_rollout(self, project):
        apply_store_data(project, None, self._play(rollout=PlayRelease("halted", "2.0.1", [2010], 0.05)))
        slot = project.find_branch("main").tracks.store_rollout.android
        assert slot.status == "failure"
        assert slot.status_reason == "Halted (was 5% Global)"

    def test_android_only_project_skips_ios(self, project):
        project.jobs = [project.jobs[1]]
        apply_store_data(project, _app_store(), self._play())
        tracks = project.find_branch("main").tracks
        assert tracks.store_release.ios is None
        assert tracks.store_release.android is not None


class TestApplyVcsData:
    def test_replaces_main_commits(self, project):
        changesets = [CommitInfo("Newest", "ana", "501", 2), CommitInfo("Older", "bo", "500", 1)]
        assert apply_vcs_data(project, changesets)
        main = project.find_branch("main")
        assert main.all_commits == changesets
        assert main.vcs_changeset == "501"

    def test_empty_leaves_commits(self, project):
        main = project.find_branch("main")
        main.all_commits = [CommitInfo("Keep", "ana")]
        assert apply_vcs_data(project, []) is False
        assert main.all_commits[0].message == "Keep"


class TestApplyAnalyticsData:
    def test_dau_and_slot_users(self, project):
        apply_store_data(project, _app_store(), None)
        users = UsersByVersion(
            ios=[{"version": "2.0.0", "activeUsers": 900}, {"version": "1.9.0", "activeUsers": 100}],
            android=[{"version": "2.0.0", "activeUsers": 50}],
        )
        assert apply_analytics_data(project, users)
        assert project.ios_dau == 1000
        assert project.android_dau == 50
        tracks = project.find_branch("main").tracks
        assert tracks.store_release.ios.active_users == 900
        assert tracks.prev_release.ios.active_users == 100

    def test_none_is_noop(self, project):
        project.ios_dau = 5
        assert apply_analytics_data(project, None) is False
        assert project.ios_dau == 5


class TestApplyPipelineStages:
    def test_annotates_building_slot(self, project):
        build = BuildRecord(number=42, job_name="game-ios", version="1.0.1", result=None, timestamp=1000)
        branch = group_builds_by_branch([build], [])[0]
        branch.tracks = build_branch_tracks(branch, project.jobs, lambda j, n: "")
        project.branches = [branch]
        stages = {("game-ios", 42): PipelineStages("IN_PROGRESS", "Archive", "Compile", 5, 2)}

        assert apply_pipeline_stages(project, stages) == 1
        slot = branch.tracks.dev.ios
        assert slot.status_reason == "Stage: Archive (2/5)"
        assert slot.stage_info["current"] == "Archive"

    def test_ignores_other_jobs(self, project):
        build = BuildRecord(number=42, job_name="game-ios", version="1.0.1", result=None, timestamp=1000)
        branch = group_builds_by_branch([build], [])[0]
        branch.tracks = build_branch_tracks(branch, project.jobs, lambda j, n: "")
        project.branches = [branch]
        stages = {("other-job", 42): PipelineStages("IN_PROGRESS", "Archive", None, 5, 2)}
        assert apply_pipeline_stages(project, stages) == 0
