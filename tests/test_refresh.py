"""Tests for the refresh cycle against in-memory readers."""

import asyncio
import tempfile
from pathlib import Path

import pytest

from release_dashboard.config import Config
from release_dashboard.integrations.analytics import UsersByVersion
from release_dashboard.integrations.app_store import AppStoreError, AppStoreInfo, StoreVersion
from release_dashboard.integrations.jenkins import JenkinsError
from release_dashboard.runtime import build_runtime
from release_dashboard.sources import Sources
from release_dashboard.state.cache import DashboardState
from release_dashboard.state.models import (
    BuildRecord,
    BuildStatus,
    CacheMeta,
    CacheRoot,
    CommitInfo,
    Job,
    PipelineStages,
    Project,
    QueuedBuild,
)
from release_dashboard.state.snapshot import load_snapshot

JOBS = [
    Job("game-ios", "Game", "ios", bundle_id="com.example.game"),
    Job("game-android", "Game", "android", bundle_id="com.example.game"),
]


def _record(number, version, result="SUCCESS", branch="main", build_type="Debug", job="game-ios", timestamp=None):
    return BuildRecord(
        number=number,
        job_name=job,
        version=version,
        result=result,
        timestamp=timestamp if timestamp is not None else number * 1000,
        duration=60000,
        branch=branch,
        build_type=build_type,
        commits=(CommitInfo(f"Change {number}", "ana"),),
    )


class FakeJenkins:
    def __init__(self, builds):
        self.builds = {job: list(records) for job, records in builds.items()}
        self.failing: set[str] = set()
        self.results: dict[tuple[str, int], str] = {}
        self.stages: dict[tuple[str, int], PipelineStages] = {}
        self.queue: list[QueuedBuild] = []
        self.since_calls: list[tuple[str, int | None]] = []
        self.delay = 0.0
        self.queue_error: Exception | None = None

    def build_url(self, job_name, number):
        return f"https://ci.test/job/{job_name}/{number}/"

    async def list_recent_builds(self, job_name, since_number=None):
        self.since_calls.append((job_name, since_number))
        if self.delay:
            await asyncio.sleep(self.delay)
        if job_name in self.failing:
            raise JenkinsError(500, "boom")
        builds = [b for b in self.builds.get(job_name, []) if not since_number or b.number > since_number]
        return sorted(builds, key=lambda b: b.timestamp, reverse=True)

    async def get_last_build_number(self, job_name):
        numbers = [b.number for b in self.builds.get(job_name, [])]
        return max(numbers) if numbers else None

    async def list_queued_builds(self):
        if self.queue_error:
            raise self.queue_error
        return list(self.queue)

    async def get_build_statuses(self, refs):
        return [BuildStatus(j, n, self.results[(j, n)], 0, 90000) for j, n in refs if (j, n) in self.results]

    async def get_pipeline_stages(self, job_name, number):
        if (job_name, number) not in self.stages:
            raise JenkinsError(404, "no pipeline")
        return self.stages[(job_name, number)]

    async def close(self):
        pass


class FakeAppStore:
    def __init__(self, info=None, error=None, delay=0.0):
        self.info = info
        self.error = error
        self.delay = delay

    async def get_app_info(self, bundle_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.info

    async def close(self):
        pass


class FakeAnalytics:
    def __init__(self, users):
        self.users = users
        self.properties = []

    async def get_users_by_version(self, property_id, platform=None, days=7):
        self.properties.append(property_id)
        return self.users

    async def close(self):
        pass


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


def _config(tmp_dir, jobs=JOBS, projects=None, **kwargs):
    return Config(
        jobs=list(jobs),
        projects=projects or {},
        cache_path=tmp_dir / "cache.json",
        source_timeout=kwargs.pop("source_timeout", 1.0),
        **kwargs,
    )


def _jenkins():
    return FakeJenkins({
        "game-ios": [_record(1, "1.0.100"), _record(2, "1.0.101", branch="feature/x")],
        "game-android": [_record(10, "1.0.100", job="game-android")],
    })


def _runtime(tmp_dir, jenkins=None, state=None, **sources):
    config = _config(tmp_dir, projects=sources.pop("projects", None), **sources.pop("config", {}))
    return build_runtime(config, sources=Sources(jenkins=jenkins or _jenkins(), **sources), state=state, debounce=0)


def _events(sub):
    names = []
    while not sub.queue.empty():
        event = sub.queue.get_nowait()
        if event is not None:
            names.append(event.name)
    return names


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_first_refresh_is_full(self, tmp_dir):
        runtime = _runtime(tmp_dir)
        sub = runtime.events.subscribe()

        assert await runtime.orchestrator.refresh()

        state = runtime.state
        assert runtime.orchestrator.last_cycle == "full"
        assert [p.id for p in state.projects] == ["game"]
        assert [b.name for b in state.projects[0].branches] == ["main", "feature/x"]
        assert state.meta.job_build_numbers == {"game-ios": 2, "game-android": 10}
        assert state.meta.last_full_refresh is not None
        main = state.projects[0].find_branch("main")
        assert main.tracks.dev.ios.status == "success"
        assert main.tracks.dev.android.url == "https://ci.test/job/game-android/10/"

        names = _events(sub)
        assert names.index("fetch-started") < names.index("refresh")
        assert "store-updated" in names
        assert runtime.events.current_status is None
        await runtime.close()

    @pytest.mark.asyncio
    async def test_snapshot_written(self, tmp_dir):
        runtime = _runtime(tmp_dir)
        await runtime.orchestrator.refresh()
        await runtime.close()
        assert load_snapshot(tmp_dir / "cache.json") == runtime.state.root

    @pytest.mark.asyncio
    async def test_no_jenkins_marks_projects_failed(self, tmp_dir):
        config = _config(tmp_dir)
        runtime = build_runtime(config, sources=Sources(), debounce=0)
        await runtime.orchestrator.refresh()
        project = runtime.state.projects[0]
        assert project.error is not None
        assert project.branches == []
        await runtime.close()


class TestIncremental:
    @pytest.mark.asyncio
    async def test_no_new_builds_runs_micro_cycle(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        jenkins.since_calls.clear()

        await runtime.orchestrator.refresh()
        assert runtime.orchestrator.last_cycle == "micro"
        assert jenkins.since_calls == []
        await runtime.close()

    @pytest.mark.asyncio
    async def test_new_build_fetches_only_newer(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        first_full = runtime.state.meta.last_full_refresh
        jenkins.since_calls.clear()

        jenkins.builds["game-ios"].append(_record(3, "1.0.102"))
        await runtime.orchestrator.refresh()

        assert runtime.orchestrator.last_cycle == "incremental"
        assert sorted(jenkins.since_calls) == [("game-android", 10), ("game-ios", 2)]
        assert runtime.state.meta.job_build_numbers["game-ios"] == 3
        assert runtime.state.meta.last_full_refresh == first_full

        main = runtime.state.projects[0].find_branch("main")
        assert main.ios.dev.current.number == 3
        assert main.ios.dev.oldest_success.number == 1
        # Android had nothing new; its cached build is retained
        assert main.android.dev.current.number == 10
        assert runtime.state.projects[0].find_branch("feature/x") is not None
        assert {c.message for c in main.all_commits} == {"Change 1", "Change 3", "Change 10"}
        await runtime.close()

    @pytest.mark.asyncio
    async def test_forced_full_refetches_everything(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        jenkins.since_calls.clear()

        await runtime.orchestrator.refresh(full=True)
        assert runtime.orchestrator.last_cycle == "full"
        assert all(since is None for _, since in jenkins.since_calls)
        await runtime.close()

    @pytest.mark.asyncio
    async def test_invalid_cache_forces_full(self, tmp_dir):
        jenkins = _jenkins()
        state = DashboardState(CacheRoot(
            meta=CacheMeta(job_build_numbers={"game-ios": 2, "game-android": 10}),
            projects=[Project(id="game", display_name="Game")],
        ))
        runtime = _runtime(tmp_dir, jenkins=jenkins, state=state)

        await runtime.orchestrator.refresh()
        assert runtime.orchestrator.last_cycle == "full"
        assert all(since is None for _, since in jenkins.since_calls)
        assert runtime.state.meta.last_full_refresh is not None
        assert runtime.orchestrator.invalidated
        await runtime.close()

    @pytest.mark.asyncio
    async def test_success_without_version_forces_full(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        main = runtime.state.projects[0].find_branch("main")
        main.ios.release.current = _record(5, None, build_type="Release")
        jenkins.since_calls.clear()

        await runtime.orchestrator.refresh(full=False)

        assert runtime.orchestrator.last_cycle == "full"
        assert runtime.orchestrator.invalidated
        assert jenkins.since_calls
        assert all(since is None for _, since in jenkins.since_calls)
        assert runtime.state.projects[0].find_branch("main").ios.release.current is None
        await runtime.close()

    @pytest.mark.asyncio
    async def test_valid_cache_not_marked_invalidated(self, tmp_dir):
        runtime = _runtime(tmp_dir)
        await runtime.orchestrator.refresh()
        await runtime.orchestrator.refresh()
        assert runtime.orchestrator.last_cycle == "micro"
        assert not runtime.orchestrator.invalidated
        await runtime.close()


class TestInProgressBuilds:
    def _jenkins(self):
        jenkins = _jenkins()
        jenkins.builds["game-ios"].append(_record(4, "1.0.102", result=None))
        return jenkins

    @pytest.mark.asyncio
    async def test_completion_detected_on_micro_cycle(self, tmp_dir):
        jenkins = self._jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        main = runtime.state.projects[0].find_branch("main")
        assert main.tracks.dev.ios.status == "building"

        jenkins.results[("game-ios", 4)] = "SUCCESS"
        await runtime.orchestrator.refresh()

        main = runtime.state.projects[0].find_branch("main")
        assert runtime.orchestrator.last_cycle == "micro"
        assert main.ios.dev.current.result == "SUCCESS"
        assert main.ios.dev.success.number == 4
        assert main.tracks.dev.ios.status == "success"
        await runtime.close()

    @pytest.mark.asyncio
    async def test_pipeline_stage_annotation(self, tmp_dir):
        jenkins = self._jenkins()
        jenkins.stages[("game-ios", 4)] = PipelineStages("IN_PROGRESS", "Build", "Checkout", 3, 1)
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()

        slot = runtime.state.projects[0].find_branch("main").tracks.dev.ios
        assert slot.status_reason == "Stage: Build (1/3)"
        await runtime.close()

    @pytest.mark.asyncio
    async def test_queue_marks_slot(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()

        jenkins.queue = [QueuedBuild("game-android", "main", "Debug")]
        await runtime.orchestrator.refresh()
        main = runtime.state.projects[0].find_branch("main")
        assert main.tracks.dev.android.status == "queued"
        await runtime.close()


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_failed_job_keeps_previous_branches(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()

        before = [b.to_dict() for b in runtime.state.projects[0].branches]

        jenkins.failing.add("game-ios")
        await runtime.orchestrator.refresh(full=True)

        project = runtime.state.projects[0]
        assert "boom" in project.error
        assert [b.to_dict() for b in project.branches] == before
        await runtime.close()

    @pytest.mark.asyncio
    async def test_failed_job_on_incremental_cycle_keeps_sibling_builds(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        before = [b.to_dict() for b in runtime.state.projects[0].branches]

        jenkins.builds["game-ios"].append(_record(3, "1.0.102"))
        jenkins.builds["game-android"].append(_record(11, "1.0.102", job="game-android"))
        jenkins.failing.add("game-ios")
        await runtime.orchestrator.refresh()

        project = runtime.state.projects[0]
        assert runtime.orchestrator.last_cycle == "incremental"
        assert "boom" in project.error
        assert [b.to_dict() for b in project.branches] == before
        assert runtime.state.meta.job_build_numbers == {"game-ios": 2, "game-android": 10}

        jenkins.failing.clear()
        jenkins.since_calls.clear()
        await runtime.orchestrator.refresh()

        assert sorted(jenkins.since_calls) == [("game-android", 10), ("game-ios", 2)]
        project = runtime.state.projects[0]
        assert project.error is None
        main = project.find_branch("main")
        assert main.android.dev.current.number == 11
        assert main.ios.dev.current.number == 3
        assert runtime.state.meta.job_build_numbers == {"game-ios": 3, "game-android": 11}
        await runtime.close()

    @pytest.mark.asyncio
    async def test_queue_error_does_not_abort_micro_cycle(self, tmp_dir):
        jenkins = _jenkins()
        runtime = _runtime(tmp_dir, jenkins=jenkins)
        await runtime.orchestrator.refresh()
        sub = runtime.events.subscribe()

        jenkins.queue_error = ValueError("Expecting value: line 1 column 1 (char 0)")
        assert await runtime.orchestrator.refresh()

        assert runtime.orchestrator.last_cycle == "micro"
        assert "refresh" in _events(sub)
        assert runtime.state.projects[0].find_branch("main").tracks.dev.ios.status == "success"
        await runtime.close()

    @pytest.mark.asyncio
    async def test_queue_error_does_not_abort_full_cycle(self, tmp_dir):
        jenkins = _jenkins()
        jenkins.queue_error = JenkinsError(200, "Invalid JSON")
        runtime = _runtime(tmp_dir, jenkins=jenkins)

        assert await runtime.orchestrator.refresh()
        assert runtime.state.projects[0].error is None
        await runtime.close()

    @pytest.mark.asyncio
    async def test_other_projects_unaffected(self, tmp_dir):
        jenkins = _jenkins()
        jenkins.failing.add("other-ios")
        config = _config(tmp_dir, jobs=[*JOBS, Job("other-ios", "Other", "ios")])
        runtime = build_runtime(config, sources=Sources(jenkins=jenkins), debounce=0)
        await runtime.orchestrator.refresh()

        game = runtime.state.find_project("game")
        other = runtime.state.find_project("other")
        assert game.error is None and game.branches
        assert other.error is not None and other.branches == []
        await runtime.close()

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_cycle(self, tmp_dir):
        runtime = _runtime(tmp_dir, app_store=FakeAppStore(error=AppStoreError(500, "down")))
        assert await runtime.orchestrator.refresh()
        assert runtime.state.projects[0].branches
        await runtime.close()

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, tmp_dir):
        runtime = _runtime(
            tmp_dir,
            app_store=FakeAppStore(info=AppStoreInfo("com.example.game"), delay=5),
            config={"source_timeout": 0.05},
        )
        assert await runtime.orchestrator.refresh()
        main = runtime.state.projects[0].find_branch("main")
        assert main.tracks.store_release.ios is None
        await runtime.close()


class TestSideSources:
    def _store(self):
        return FakeAppStore(info=AppStoreInfo(
            "com.example.game",
            live=StoreVersion("2.0.0", build="120", build_id="b1", state="READY_FOR_SALE"),
        ))

    @pytest.mark.asyncio
    async def test_store_data_applied_to_main(self, tmp_dir):
        runtime = _runtime(tmp_dir, app_store=self._store())
        await runtime.orchestrator.refresh()
        main = runtime.state.projects[0].find_branch("main")
        assert main.tracks.store_release.ios.version == "2.0.0 (120)"
        assert runtime.state.projects[0].find_branch("feature/x").tracks.store_release.ios is None
        await runtime.close()

    @pytest.mark.asyncio
    async def test_store_slots_survive_failed_store_fetch(self, tmp_dir):
        jenkins = _jenkins()
        store = self._store()
        runtime = _runtime(tmp_dir, jenkins=jenkins, app_store=store)
        await runtime.orchestrator.refresh()

        store.error = AppStoreError(503, "unavailable")
        jenkins.builds["game-ios"].append(_record(3, "1.0.102"))
        await runtime.orchestrator.refresh()

        assert runtime.orchestrator.last_cycle == "incremental"
        main = runtime.state.projects[0].find_branch("main")
        assert main.tracks.store_release.ios.version == "2.0.0 (120)"
        await runtime.close()

    @pytest.mark.asyncio
    async def test_vcs_changesets(self, tmp_dir):
        calls = []

        async def vcs(repo, branch, limit):
            calls.append((repo, branch, limit))
            return [CommitInfo("Latest", "ana", "501", 2000), CommitInfo("Older", "bo", "500", 1000)]

        runtime = _runtime(tmp_dir, vcs=vcs, projects={"Game": {"plasticRepo": "game@srv"}})
        await runtime.orchestrator.refresh()

        main = runtime.state.projects[0].find_branch("main")
        assert calls == [("game@srv", "main", 10)]
        assert main.vcs_changeset == "501"
        assert [c.message for c in main.all_commits] == ["Latest", "Older"]
        await runtime.close()

    @pytest.mark.asyncio
    async def test_analytics(self, tmp_dir):
        users = UsersByVersion(ios=[{"version": "2.0.0", "activeUsers": 300}], android=[])
        analytics = FakeAnalytics(users)
        runtime = _runtime(
            tmp_dir,
            app_store=self._store(),
            analytics=analytics,
            projects={"Game": {"analyticsPropertyId": "123"}},
        )
        await runtime.orchestrator.refresh()

        project = runtime.state.projects[0]
        assert analytics.properties == ["123"]
        assert project.ios_dau == 300
        assert project.find_branch("main").tracks.store_release.ios.active_users == 300
        await runtime.close()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_refresh_is_skipped(self, tmp_dir):
        jenkins = _jenkins()
        jenkins.delay = 0.05
        runtime = _runtime(tmp_dir, jenkins=jenkins)

        results = await asyncio.gather(runtime.orchestrator.refresh(), runtime.orchestrator.refresh())
        assert sorted(results) == [False, True]
        assert not runtime.orchestrator.refreshing
        await runtime.close()

    @pytest.mark.asyncio
    async def test_scheduler_runs_and_stops(self, tmp_dir):
        runtime = _runtime(tmp_dir)
        runtime.scheduler.start()
        assert runtime.scheduler.running
        for _ in range(100):
            await asyncio.sleep(0.01)
            if runtime.orchestrator.last_cycle:
                break
        await runtime.orchestrator.wait_until_idle()
        await runtime.scheduler.stop()
        assert not runtime.scheduler.running
        assert runtime.orchestrator.last_cycle == "full"
        await runtime.close()
