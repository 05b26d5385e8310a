"""The refresh cycle: decide what to fetch, merge it into state, tell subscribers.

One cycle runs at a time. A cycle is one of:

- full: every job's recent history is fetched and branches are rebuilt
  wholesale (forced, bootstrap, or after the cache was found invalid);
- incremental: only builds newer than the cached build numbers are fetched
  and merged with the builds already held on the cached branches;
- micro: no job advanced, so only in-progress builds, the queue and the
  store/VCS side data are re-read.
"""

import asyncio
import logging
import time
from dataclasses import replace

from release_dashboard.config import Config
from release_dashboard.core.apply import (
    apply_analytics_data,
    apply_pipeline_stages,
    apply_store_data,
    apply_vcs_data,
)
from release_dashboard.core.branches import (
    MAIN_BRANCH,
    group_builds_by_branch,
    merge_commits,
    offer_build,
)
from release_dashboard.core.tracks import build_branch_tracks, carry_over_store_slots
from release_dashboard.integrations.http import IntegrationError
from release_dashboard.sources import Sources
from release_dashboard.state.cache import DashboardState
from release_dashboard.state.events import EventBus
from release_dashboard.state.models import (
    BUILD_FAMILIES,
    PLATFORMS,
    Branch,
    BuildRecord,
    BuildStatus,
    PipelineStages,
    Project,
    QueuedBuild,
)
from release_dashboard.state.snapshot import SnapshotWriter

logger = logging.getLogger(__name__)

VCS_CHANGESET_LIMIT = 10
SIDE_SOURCES = ["store", "vcs", "analytics"]


def _now_ms() -> int:
    return int(time.time() * 1000)


def in_progress_refs(projects: list[Project]) -> list[tuple[str, int]]:
    """``(job_name, number)`` for every current build still running."""
    refs = []
    for project in projects:
        for branch in project.branches:
            for platform in PLATFORMS:
                builds = branch.builds(platform)
                for family in BUILD_FAMILIES:
                    current = builds.family(family).current
                    if current is not None and current.in_progress and current.job_name:
                        ref = (current.job_name, current.number)
                        if ref not in refs:
                            refs.append(ref)
    return refs


def apply_build_statuses(projects: list[Project], statuses: list[BuildStatus]) -> int:
    """Swap in completed records for builds that finished. Returns how many changed."""
    finished = {(s.job_name, s.number): s for s in statuses if s.result is not None}
    if not finished:
        return 0
    changed = 0
    for project in projects:
        for branch in project.branches:
            for platform in PLATFORMS:
                builds = branch.builds(platform)
                for family in BUILD_FAMILIES:
                    pointers = builds.family(family)
                    current = pointers.current
                    if current is None or not current.in_progress:
                        continue
                    status = finished.get((current.job_name, current.number))
                    if status is None:
                        continue
                    completed = replace(current, result=status.result, duration=status.duration)
                    pointers.current = completed
                    if completed.is_success:
                        offer_build(pointers, completed, track_oldest=family == "dev")
                    changed += 1
                    logger.info("Build %s#%s completed: %s", current.job_name, current.number, status.result)
    return changed


class RefreshOrchestrator:
    """Owns the refresh cycle for one DashboardState."""

    def __init__(
        self,
        config: Config,
        state: DashboardState,
        sources: Sources,
        events: EventBus,
        writer: SnapshotWriter | None = None,
    ):
        self.config = config
        self.state = state
        self.sources = sources
        self.events = events
        self.writer = writer
        self.phase = "idle"
        self.last_cycle: str | None = None
        self.invalidated = False
        self._refreshing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._background: set[asyncio.Task] = set()

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    async def wait_until_idle(self):
        """Wait for the running cycle and any requested background cycles."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._idle.wait()

    def request_refresh(self, full: bool = False) -> asyncio.Task:
        """Start a cycle in the background."""
        task = asyncio.get_running_loop().create_task(self.refresh(full=full))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def refresh(self, full: bool = False) -> bool:
        """Run one cycle. Returns False without doing anything if a cycle is already running."""
        if self._refreshing:
            logger.debug("Refresh already in progress, skipping")
            return False

        self._refreshing = True
        self._idle.clear()
        started = time.monotonic()
        try:
            await self._run(full)
            logger.info("%s refresh complete in %.1fs", (self.last_cycle or "").capitalize(), time.monotonic() - started)
        finally:
            self._refreshing = False
            self.phase = "idle"
            self._status(None)
            self._idle.set()
        return True

    # ── Cycle selection ───────────────────────────────────────────────────────

    async def _run(self, full: bool):
        has_cache = self.state.has_cache()
        self.invalidated = not full and has_cache and self.state.is_invalid()
        if self.invalidated:
            logger.info("Cache invalid, forcing full refresh")

        if full or not has_cache or self.invalidated:
            await self._full_refresh(incremental=False, forced=full)
            return

        self.phase = "checking"
        self._status("Checking for new builds...")
        advanced = await self._jobs_advanced()
        if advanced:
            await self._full_refresh(incremental=True, forced=False)
        else:
            await self._micro_refresh()

    def _job_names(self) -> list[str]:
        return [job.name for job in self.config.jobs]

    async def _jobs_advanced(self) -> bool:
        if self.sources.jenkins is None:
            return False
        names = self._job_names()
        numbers = await asyncio.gather(
            *(self.sources.jenkins.get_last_build_number(name) for name in names),
            return_exceptions=True,
        )
        cached = self.state.meta.job_build_numbers
        for name, number in zip(names, numbers):
            if isinstance(number, Exception):
                logger.warning("Last build check failed for %s: %s", name, number)
                continue
            if number and number > cached.get(name, 0):
                logger.info("New builds detected: %s (%s -> %s)", name, cached.get(name), number)
                return True
        return False

    # ── CI helpers ────────────────────────────────────────────────────────────

    def _build_url(self, job_name: str, number: int) -> str:
        if self.sources.jenkins is None:
            return ""
        return self.sources.jenkins.build_url(job_name, number)

    async def _list_queue(self) -> list[QueuedBuild]:
        if self.sources.jenkins is None:
            return []
        return await self.sources.jenkins.list_queued_builds()

    async def _poll_in_progress(self, projects: list[Project]) -> int:
        refs = in_progress_refs(projects)
        if not refs or self.sources.jenkins is None:
            return 0
        statuses = await self.sources.jenkins.get_build_statuses(refs)
        changed = apply_build_statuses(projects, statuses)
        if changed:
            logger.info("%d in-progress builds completed", changed)
        else:
            logger.debug("%d builds still in progress", len(refs))
        return changed

    async def _list_builds(self, job_name: str, since_number: int | None) -> list[BuildRecord]:
        if self.sources.jenkins is None:
            raise IntegrationError(0, "Jenkins not configured")
        return await self.sources.jenkins.list_recent_builds(job_name, since_number=since_number)

    def _store_status(self, project: Project, branch: str) -> dict:
        merged = {}
        for job in project.jobs:
            merged.update(self.state.store_status_for(job.name, branch))
        return merged

    def _rebuild_tracks(self, project: Project, branch: Branch, queue: list[QueuedBuild], previous: Branch | None):
        tracks = build_branch_tracks(
            branch,
            project.jobs,
            self._build_url,
            queue=queue,
            store_status=self._store_status(project, branch.name),
        )
        carry_over_store_slots(tracks, previous.tracks if previous is not None else None)
        branch.tracks = tracks

    # ── Full and incremental refresh ──────────────────────────────────────────

    async def _full_refresh(self, incremental: bool, forced: bool):
        self.phase = "refreshing-incremental" if incremental else "refreshing-full"
        self.last_cycle = "incremental" if incremental else "full"
        if forced:
            logger.info("Starting full refresh")
        else:
            logger.info("Starting %s refresh", "incremental" if incremental else "initial")
        self._status("Fetching builds...")

        previous = {p.id: p for p in self.state.projects}
        cached_numbers = dict(self.state.meta.job_build_numbers)
        if incremental:
            (polled,) = await asyncio.gather(self._poll_in_progress(self.state.projects), return_exceptions=True)
            if isinstance(polled, Exception):
                logger.warning("In-progress poll failed: %s", polled)

        names = self._job_names()
        queue, *fetched = await asyncio.gather(
            self._list_queue(),
            *(self._list_builds(name, cached_numbers.get(name) if incremental else None) for name in names),
            return_exceptions=True,
        )
        if isinstance(queue, BaseException):
            logger.warning("Queue fetch failed: %s", queue)
            queue = []
        by_job = dict(zip(names, fetched))

        job_numbers = dict(cached_numbers)
        for name, builds in by_job.items():
            if isinstance(builds, BaseException) or not builds:
                continue
            job_numbers[name] = max(max(b.number for b in builds), job_numbers.get(name, 0))

        projects = []
        for template in self.config.build_projects():
            prev = previous.get(template.id)
            if prev is not None:
                template.ios_dau = prev.ios_dau
                template.android_dau = prev.android_dau

            errors = [by_job[j.name] for j in template.jobs if isinstance(by_job.get(j.name), BaseException)]
            if errors:
                logger.error("Error fetching %s: %s", template.display_name, errors[0])
                template.branches = prev.branches if prev is not None else []
                template.error = str(errors[0])
                # Sibling jobs are refetched from the cached numbers next cycle
                for job in template.jobs:
                    if job.name in cached_numbers:
                        job_numbers[job.name] = cached_numbers[job.name]
                    else:
                        job_numbers.pop(job.name, None)
                projects.append(template)
                continue

            platform_builds: dict[str, list[BuildRecord]] = {p: [] for p in PLATFORMS}
            for job in template.jobs:
                platform_builds.setdefault(job.platform, []).extend(by_job.get(job.name) or [])
            if incremental and prev is not None:
                for branch in prev.branches:
                    for platform in PLATFORMS:
                        platform_builds[platform].extend(branch.builds(platform).records())

            template.branches = group_builds_by_branch(platform_builds["ios"], platform_builds["android"])
            for branch in template.branches:
                prev_branch = prev.find_branch(branch.name) if prev is not None else None
                if incremental and prev_branch is not None:
                    branch.all_commits = merge_commits(branch.all_commits, prev_branch.all_commits)
                    branch.vcs_changeset = prev_branch.vcs_changeset
                self._rebuild_tracks(template, branch, queue, prev_branch)
            projects.append(template)

        self.state.replace_projects(projects, job_numbers, full=forced or self.state.meta.last_full_refresh is None)
        logger.info("CI data merged for %d projects", len(projects))
        self._save()
        self.events.publish("fetch-started", {"sources": SIDE_SOURCES})

        self._status("Loading store data...")
        await self._load_side_data(projects)

        self._save()
        self.events.publish("refresh", {"timestamp": _now_ms()})

    async def _load_side_data(self, projects: list[Project]):
        loop = asyncio.get_running_loop()
        store_ready = loop.create_future()

        async def store():
            try:
                data = await self._degrade("store", self._fetch_store(), ({}, {}))
                self._apply_store(projects, data)
                self.events.publish("store-updated", {"timestamp": _now_ms()})
                self.events.publish("data-updated", {"source": "store", "timestamp": _now_ms()})
            finally:
                if not store_ready.done():
                    store_ready.set_result(None)

        async def vcs():
            data = await self._degrade("vcs", self._fetch_vcs(), {})
            self._apply_vcs(projects, data)
            self.events.publish("data-updated", {"source": "vcs", "timestamp": _now_ms()})

        async def analytics():
            data = await self._degrade("analytics", self._fetch_analytics(), {})
            await store_ready
            for project in projects:
                apply_analytics_data(project, data.get(project.id))
            self.events.publish("data-updated", {"source": "analytics", "timestamp": _now_ms()})

        async def pipeline():
            stages = await self._degrade("pipeline", self._fetch_pipeline_stages(projects), {})
            for project in projects:
                apply_pipeline_stages(project, stages)

        names = ["store", "vcs", "analytics", "pipeline"]
        results = await asyncio.gather(store(), vcs(), analytics(), pipeline(), return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning("%s apply failed: %s", name, result)

    # ── Micro refresh ─────────────────────────────────────────────────────────

    async def _micro_refresh(self):
        self.phase = "checking"
        self.last_cycle = "micro"
        logger.info("No new builds, checking in-progress builds")
        projects = self.state.projects

        polled, queue = await asyncio.gather(
            self._poll_in_progress(projects), self._list_queue(), return_exceptions=True
        )
        if isinstance(polled, Exception):
            logger.warning("In-progress poll failed: %s", polled)
        if isinstance(queue, Exception):
            logger.warning("Queue fetch failed: %s", queue)
            queue = []

        for project in projects:
            for branch in project.branches:
                self._rebuild_tracks(project, branch, queue, branch)
        self.state.touch()
        self._save()

        self._status("Loading store data...")
        store_data, vcs_data = await asyncio.gather(
            self._degrade("store", self._fetch_store(), ({}, {})),
            self._degrade("vcs", self._fetch_vcs(), {}),
        )
        self._apply_vcs(projects, vcs_data)
        self._apply_store(projects, store_data)

        self._save()
        self.events.publish("refresh", {"timestamp": _now_ms()})

    # ── Side sources ──────────────────────────────────────────────────────────

    async def _degrade(self, name: str, coro, empty):
        """Await a side-source fetch; failures and timeouts become ``empty``."""
        try:
            return await asyncio.wait_for(coro, timeout=self.config.source_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s fetch timed out after %.0fs", name, self.config.source_timeout)
        except Exception as e:
            logger.warning("%s fetch failed: %s", name, e)
        return empty

    def _bundle_ids(self, platform: str) -> list[str]:
        ids = []
        for job in self.config.jobs:
            if job.platform == platform and job.bundle_id and job.bundle_id not in ids:
                ids.append(job.bundle_id)
        return ids

    async def _fetch_store(self) -> tuple[dict, dict]:
        started = time.monotonic()

        async def collect(client, ids: list[str]) -> dict:
            if client is None or not ids:
                return {}
            results = await asyncio.gather(*(client.get_app_info(i) for i in ids), return_exceptions=True)
            out = {}
            for identifier, result in zip(ids, results):
                if isinstance(result, Exception):
                    logger.warning("Store info failed for %s: %s", identifier, result)
                else:
                    out[identifier] = result
            return out

        ios, android = await asyncio.gather(
            collect(self.sources.app_store, self._bundle_ids("ios")),
            collect(self.sources.google_play, self._bundle_ids("android")),
        )
        logger.info("Store data fetched in %.1fs", time.monotonic() - started)
        return ios, android

    def _apply_store(self, projects: list[Project], data: tuple[dict, dict]):
        ios, android = data
        if not ios and not android:
            return
        for project in projects:
            ios_job = project.job_for("ios")
            android_job = project.job_for("android")
            apply_store_data(
                project,
                ios.get(ios_job.bundle_id) if ios_job else None,
                android.get(android_job.bundle_id) if android_job else None,
                self.config.ios_beta_group,
            )
        logger.info("Store data applied")

    async def _fetch_vcs(self) -> dict:
        if self.sources.vcs is None:
            return {}
        repos = {
            name: settings["plasticRepo"]
            for name, settings in self.config.projects.items()
            if settings.get("plasticRepo")
        }
        results = await asyncio.gather(
            *(self.sources.vcs(repo, MAIN_BRANCH, VCS_CHANGESET_LIMIT) for repo in repos.values()),
            return_exceptions=True,
        )
        out = {}
        for name, result in zip(repos, results):
            if isinstance(result, Exception):
                logger.warning("VCS fetch failed for %s: %s", name, result)
            else:
                out[name] = result
        return out

    def _apply_vcs(self, projects: list[Project], data: dict):
        for project in projects:
            if changesets := data.get(project.display_name):
                apply_vcs_data(project, changesets)

    async def _fetch_analytics(self) -> dict:
        if self.sources.analytics is None:
            return {}
        targets = {}
        for project in self.state.projects:
            if prop := self.config.analytics_property(project.display_name):
                targets[project.id] = prop
        results = await asyncio.gather(
            *(self.sources.analytics.get_users_by_version(prop) for prop in targets.values()),
            return_exceptions=True,
        )
        out = {}
        for project_id, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Analytics fetch failed for %s: %s", project_id, result)
            else:
                out[project_id] = result
        return out

    async def _fetch_pipeline_stages(self, projects: list[Project]) -> dict[tuple[str, int], PipelineStages]:
        if self.sources.jenkins is None:
            return {}
        refs = in_progress_refs(projects)
        results = await asyncio.gather(
            *(self.sources.jenkins.get_pipeline_stages(job, number) for job, number in refs),
            return_exceptions=True,
        )
        stages = {}
        for ref, result in zip(refs, results):
            if isinstance(result, Exception):
                logger.debug("No pipeline stages for %s#%s: %s", ref[0], ref[1], result)
            else:
                stages[ref] = result
        return stages

    # ── Persistence and events ────────────────────────────────────────────────

    def _save(self):
        if self.writer is not None:
            self.writer.save()

    def _status(self, message: str | None):
        self.events.publish("refresh-status", {"status": message})


class RefreshScheduler:
    """Runs a refresh immediately and then every ``interval`` seconds."""

    def __init__(self, orchestrator: RefreshOrchestrator, interval: float):
        self.orchestrator = orchestrator
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="refresh-scheduler")
        logger.info("Refresh scheduler started (every %.0fs)", self.interval)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Refresh scheduler stopped")

    async def _run(self):
        while True:
            try:
                await self.orchestrator.refresh()
            except Exception:
                logger.exception("Error in refresh loop")
            await asyncio.sleep(self.interval)
