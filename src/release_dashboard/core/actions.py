"""Operator actions: trigger builds, promote, roll out, announce releases."""

import asyncio
import logging

from release_dashboard.config import Config
from release_dashboard.core.versions import extract_changeset
from release_dashboard.integrations import slack
from release_dashboard.integrations.http import IntegrationError
from release_dashboard.integrations.plastic import PlasticError, get_changeset_range
from release_dashboard.sources import Sources
from release_dashboard.state.cache import DashboardState
from release_dashboard.state.models import PLATFORMS, CommitInfo, Project

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 15
ROLLOUT_ACTIONS = ("start", "update", "halt")

# Dashboard slot name -> Google Play track
PLAY_TRACKS = {
    "storeInternal": "internal",
    "storeAlpha": "alpha",
    "storeRelease": "production",
}


class NotConfiguredError(Exception):
    """Raised when an action needs an integration that is not configured."""


def find_project(config: Config, project_id: str) -> Project | None:
    return next((p for p in config.build_projects() if p.id == project_id), None)


def _require(client, name: str):
    if client is None:
        raise NotConfiguredError(f"{name} not configured")
    return client


async def trigger_builds(
    sources: Sources,
    project: Project,
    branch: str = "main",
    build_type: str = "Debug",
    platforms: list[str] | None = None,
) -> list[dict]:
    jenkins = _require(sources.jenkins, "Jenkins")
    results = []
    for platform in platforms or PLATFORMS:
        job = project.job_for(platform)
        if job is None:
            continue
        try:
            ok = await jenkins.trigger_build(job.name, {"BRANCH": branch, "BUILD_TYPE": build_type})
            results.append({"platform": platform, "job": job.name, "buildType": build_type, "success": ok})
            logger.info("Build triggered: %s (%s, %s)", job.name, branch, build_type)
        except IntegrationError as e:
            logger.error("Failed to trigger %s: %s", job.name, e)
            results.append({"platform": platform, "job": job.name, "success": False, "error": str(e)})
    return results


async def build_history(sources: Sources, project: Project, branch: str, build_type: str) -> list[dict]:
    """Recent builds for a branch and build type, one row per version across platforms."""
    jenkins = _require(sources.jenkins, "Jenkins")

    async def fetch(job):
        try:
            return job, await jenkins.get_build_history(job.name, 20)
        except IntegrationError as e:
            logger.error("Failed to fetch builds for %s: %s", job.name, e)
            return job, []

    merged: dict[str, dict] = {}
    for job, builds in await asyncio.gather(*(fetch(j) for j in project.jobs)):
        for build in builds:
            if build["branch"] != branch or build["buildType"] != build_type or not build["version"]:
                continue
            row = merged.setdefault(build["version"], {
                "version": build["version"],
                "date": build["timestamp"] or 0,
                "iosJob": None, "iosBuildNumber": None, "iosResult": None,
                "androidJob": None, "androidBuildNumber": None, "androidResult": None,
            })
            row["date"] = max(row["date"], build["timestamp"] or 0)
            row[f"{job.platform}Job"] = job.name
            row[f"{job.platform}BuildNumber"] = build["number"]
            row[f"{job.platform}Result"] = build["result"]

    rows = sorted(merged.values(), key=lambda r: r["date"], reverse=True)
    return rows[:HISTORY_LIMIT]


async def promote(
    config: Config,
    sources: Sources,
    project: Project,
    from_track: str,
    to_track: str,
    platforms: list[str] | None = None,
    release_notes: dict[str, str] | str | None = None,
) -> list[dict]:
    """Promote the newest internal build: TestFlight to the beta group, or between Play tracks."""
    results = []
    for platform in platforms or PLATFORMS:
        job = project.job_for(platform)
        if job is None:
            continue
        try:
            if platform == "android":
                play = _require(sources.google_play, "Google Play")
                result = await play.promote(
                    job.bundle_id,
                    PLAY_TRACKS.get(from_track, from_track),
                    PLAY_TRACKS.get(to_track, to_track),
                    release_notes,
                )
            else:
                app_store = _require(sources.app_store, "App Store Connect")
                info = await app_store.get_app_info(job.bundle_id)
                if info.testflight is None or not info.testflight.build_id:
                    raise IntegrationError(404, "No TestFlight build found to promote")
                group = job.alpha_beta_group or config.ios_beta_group
                result = await app_store.promote_build(job.bundle_id, info.testflight.build_id, group)
            results.append({"platform": platform, **result})
            logger.info("Promotion completed: %s %s -> %s", platform, from_track, to_track)
        except (IntegrationError, NotConfiguredError) as e:
            logger.error("Failed to promote %s: %s", platform, e)
            results.append({"platform": platform, "success": False, "error": str(e)})
    return results


async def rollout(
    sources: Sources,
    project: Project,
    action: str,
    user_fraction: float | None = None,
    from_track: str = "storeAlpha",
    country: str | None = None,
    release_notes: dict[str, str] | str | None = None,
) -> dict:
    """Start, update or halt the Android staged rollout."""
    if action not in ROLLOUT_ACTIONS:
        raise ValueError(f"Unknown rollout action: {action}")
    job = project.job_for("android")
    if job is None or not job.bundle_id:
        raise ValueError(f"{project.id} has no Android job")
    play = _require(sources.google_play, "Google Play")

    if action == "halt":
        return await play.halt_rollout(job.bundle_id)
    if user_fraction is None or not 0 < user_fraction <= 1:
        raise ValueError("userFraction must be in (0, 1]")
    if action == "start":
        return await play.start_rollout(
            job.bundle_id, PLAY_TRACKS.get(from_track, from_track), user_fraction, release_notes, country
        )
    return await play.update_rollout(job.bundle_id, user_fraction)


def cached_changesets(state: DashboardState, project_id: str, branch: str, from_cs: int, to_cs: int) -> list[CommitInfo]:
    """Cached commits on a branch whose changeset lies in ``(from_cs, to_cs]``."""
    project = state.find_project(project_id)
    cached = project.find_branch(branch) if project else None
    if cached is None:
        return []
    selected = []
    for commit in cached.all_commits:
        changeset = extract_changeset(commit.version)
        if changeset is not None and from_cs < changeset <= to_cs:
            selected.append(commit)
    return selected


async def release_changesets(
    config: Config,
    state: DashboardState,
    project: Project,
    branch: str,
    from_cs: int,
    to_cs: int,
) -> list[CommitInfo]:
    """Changesets for a release range, from the VCS when reachable, else from the cache."""
    repo = config.project_settings(project.display_name).get("plasticRepo")
    if repo:
        try:
            changesets = await get_changeset_range(repo, from_cs, to_cs, branch)
            if changesets:
                return changesets
        except PlasticError as e:
            logger.warning("Changeset range fetch failed for %s: %s", repo, e)
    return cached_changesets(state, project.id, branch, from_cs, to_cs)


async def post_release(
    config: Config,
    project: Project,
    branch: str,
    from_cs: int,
    to_cs: int,
    changesets: list[CommitInfo],
    status: str = "building",
    platforms: list[str] | None = None,
    channel: str | None = None,
) -> slack.SlackMessage:
    if not config.slack_bot_token or not (channel or config.slack_channel):
        raise NotConfiguredError("Slack not configured")
    blocks = slack.format_release_notes(
        project.display_name, branch, from_cs, to_cs, changesets, status, platforms or []
    )
    text = f"{project.display_name} {branch} cs{from_cs} → cs{to_cs}"
    message = await asyncio.to_thread(
        slack.send_message, config.slack_bot_token, channel or config.slack_channel, text, blocks
    )
    logger.info("Posted release notes for %s (%d changesets)", project.id, len(changesets))
    return message
