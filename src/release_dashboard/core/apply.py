"""Merge store, VCS, analytics and pipeline results into a project's tracks.

All functions mutate the project in place and touch only its ``main``
branch (pipeline stages excepted). A slot is only ever overwritten: a
source that supplied nothing for a category leaves the previous value.
"""

import logging
from dataclasses import replace

from release_dashboard.core.branches import MAIN_BRANCH
from release_dashboard.core.versions import format_store_version
from release_dashboard.integrations.analytics import UsersByVersion
from release_dashboard.integrations.app_store import AppStoreInfo
from release_dashboard.integrations.google_play import PlayStoreInfo
from release_dashboard.state.models import (
    STORE_TRACKS,
    CommitInfo,
    PipelineStages,
    PlatformSlot,
    Project,
    Tracks,
)

logger = logging.getLogger(__name__)

IOS_STATE_REASONS = {
    "READY_FOR_SALE": "Live on App Store",
    "WAITING_FOR_REVIEW": "Waiting for Review",
    "IN_REVIEW": "In Review",
    "PENDING_DEVELOPER_RELEASE": "Pending Developer Release",
    "PREPARE_FOR_SUBMISSION": "Preparing for Submission",
    "PROCESSING": "Processing",
    "VALID": "Ready for TestFlight",
}

ANDROID_STATUS_REASONS = {
    "completed": "Rolled out",
    "inProgress": "Rolling out",
    "halted": "Halted",
    "draft": "Draft",
}


def _update(tracks: Tracks, name: str, platform: str, **values):
    slot = tracks.slot(name)
    current = slot.get(platform) or PlatformSlot()
    slot.set(platform, replace(current, **values))


def _percent(fraction: float | None) -> int:
    return round((fraction or 0) * 100)


def _apply_ios(tracks: Tracks, info: AppStoreInfo, beta_group: str):
    if tf := info.testflight:
        _update(
            tracks, "storeInternal", "ios",
            status="success",
            version=format_store_version(tf.version_string, tf.build),
            build_id=tf.build_id,
            version_string=tf.version_string,
            date=tf.uploaded_date,
            status_reason="TestFlight" if tf.processing_state == "VALID"
            else IOS_STATE_REASONS.get(tf.processing_state, tf.processing_state),
        )

    if live := info.live:
        _update(
            tracks, "storeRelease", "ios",
            status="success",
            version=format_store_version(live.version, live.build),
            build_id=live.build_id,
            version_string=live.version,
            date=live.created_date,
            status_reason=IOS_STATE_REASONS.get(live.state, "App Store"),
        )

    if prev := info.prev_live:
        _update(
            tracks, "prevRelease", "ios",
            status="success",
            version=format_store_version(prev.version, prev.build),
            build_id=prev.build_id,
            version_string=prev.version,
            date=prev.created_date,
            status_reason="Previous Release",
        )

    if group := info.beta_groups.get(beta_group):
        _update(
            tracks, "storeAlpha", "ios",
            status="success",
            version=group.version_string or group.build,
            build_id=group.build_id,
            version_string=group.version_string,
            date=group.uploaded_date,
            status_reason=f"TestFlight {beta_group}",
        )
    elif pending := info.pending:
        _update(
            tracks, "storeAlpha", "ios",
            status="review",
            version=format_store_version(pending.version, pending.build),
            build_id=pending.build_id,
            version_string=pending.version,
            status_reason=IOS_STATE_REASONS.get(pending.state, pending.state),
        )

    if rollout := info.rollout:
        paused = rollout.state == "PAUSED"
        percent = _percent(rollout.user_fraction)
        _update(
            tracks, "storeRollout", "ios",
            status="review" if paused else "success",
            version=format_store_version(rollout.version, rollout.build),
            build_id=rollout.build_id,
            version_string=rollout.version,
            date=rollout.created_date,
            user_fraction=rollout.user_fraction,
            status_reason=f"Phased Release Paused ({percent}%)" if paused else f"Phased Release ({percent}%)",
        )
    else:
        _update(tracks, "storeRollout", "ios", status="none", version="N/A", status_reason="No phased release")


def _rollout_reason(halted: bool, percent: int, countries: list[str] | None) -> str:
    mexico_only = countries == ["MX"]
    if halted:
        return f"Halted (was {percent}% {'Mexico' if mexico_only else 'Global'})"
    if mexico_only:
        return f"🇲🇽 Mexico ({percent}%)"
    return f"🌍 {percent}% Global"


def _apply_android(tracks: Tracks, info: PlayStoreInfo):
    def release_values(release) -> dict:
        return {
            "version": release.version_name,
            "version_code": release.version_codes[0] if release.version_codes else None,
        }

    if internal := info.internal:
        _update(
            tracks, "storeInternal", "android",
            status="success", status_reason="Internal Testing", **release_values(internal),
        )

    if alpha := info.alpha:
        _update(
            tracks, "storeAlpha", "android",
            status="success",
            status_reason=ANDROID_STATUS_REASONS.get(alpha.status, "Closed Testing"),
            **release_values(alpha),
        )

    if rollout := info.rollout:
        halted = rollout.status == "halted"
        fraction = rollout.user_fraction
        if fraction is None:
            # Country-targeted releases without a fraction reach everyone in the region
            fraction = 1.0 if rollout.country_targeting else 0.0
        _update(
            tracks, "storeRollout", "android",
            status="failure" if halted else "success",
            user_fraction=fraction,
            country_targeting=rollout.country_targeting,
            status_reason=_rollout_reason(halted, _percent(fraction), rollout.country_targeting),
            **release_values(rollout),
        )
    else:
        _update(tracks, "storeRollout", "android", status="none", version="N/A", status_reason="No staged rollout")

    if production := info.production:
        _update(
            tracks, "storeRelease", "android",
            status="success",
            status_reason=ANDROID_STATUS_REASONS.get(production.status, "Play Store"),
            **release_values(production),
        )


def apply_store_data(
    project: Project,
    app_store: AppStoreInfo | None,
    play_store: PlayStoreInfo | None,
    beta_group: str = "Alpha",
) -> bool:
    """Fill the main branch's store slots. Returns False when there is no main branch."""
    main = project.find_branch(MAIN_BRANCH)
    if main is None:
        return False

    ios_job = project.job_for("ios")
    if ios_job is not None and app_store is not None:
        _apply_ios(main.tracks, app_store, ios_job.alpha_beta_group or beta_group)

    if project.job_for("android") is not None and play_store is not None:
        _apply_android(main.tracks, play_store)
    return True


def apply_vcs_data(project: Project, changesets: list[CommitInfo]) -> bool:
    """Replace the main branch's commit list with the newest VCS changesets."""
    main = project.find_branch(MAIN_BRANCH)
    if main is None or not changesets:
        return False
    main.all_commits = list(changesets)
    main.vcs_changeset = changesets[0].version
    return True


def apply_analytics_data(project: Project, users: UsersByVersion | None) -> bool:
    """Attach DAU totals and per-slot active users matched by version."""
    if users is None:
        return False
    project.ios_dau = users.total("ios")
    project.android_dau = users.total("android")

    main = project.find_branch(MAIN_BRANCH)
    if main is None:
        return True

    for name in STORE_TRACKS:
        slot = main.tracks.slot(name)
        if (ios := slot.ios) and (count := users.users_for("ios", ios.version_string)):
            ios.active_users = count
        if (android := slot.android) and (count := users.users_for("android", android.version)):
            android.active_users = count
    return True


def apply_pipeline_stages(project: Project, stages: dict[tuple[str, int], PipelineStages]) -> int:
    """Annotate building dev/release slots with their current pipeline stage.

    ``stages`` is keyed by ``(job_name, build_number)``. Returns the number of
    slots updated.
    """
    updated = 0
    for branch in project.branches:
        for platform in ("ios", "android"):
            job = project.job_for(platform)
            if job is None:
                continue
            builds = branch.builds(platform)
            for family in ("dev", "release"):
                build = builds.family(family).current
                if build is None or not build.in_progress:
                    continue
                info = stages.get((job.name, build.number))
                slot = branch.tracks.slot(family).get(platform)
                if info is None or slot is None or slot.status != "building":
                    continue
                stage = info.current_stage or info.last_completed_stage
                if not stage:
                    continue
                if info.total_stages:
                    slot.status_reason = f"Stage: {stage} ({info.completed_count}/{info.total_stages})"
                else:
                    slot.status_reason = f"Stage: {stage}"
                slot.stage_info = info.to_dict()
                updated += 1
    return updated
