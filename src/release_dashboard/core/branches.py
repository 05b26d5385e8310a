"""Reduce raw CI build lists into per-branch aggregates."""

from collections.abc import Iterable

from release_dashboard.core.versions import changeset_rank
from release_dashboard.state.models import (
    BUILD_FAMILIES,
    Branch,
    BuildPointers,
    BuildRecord,
    CommitInfo,
)

MAIN_BRANCH = "main"
BRANCH_COMMIT_PREVIEW = 5


def build_family(build_type: str | None) -> str:
    """Classify a CI build type as ``dev``, ``alpha`` or ``release``."""
    lowered = (build_type or "Debug").lower()
    if "alpha" in lowered:
        return "alpha"
    if "release" in lowered:
        return "release"
    return "dev"


def replacement_rank(build: BuildRecord) -> tuple:
    """Ordering used to pick a family's current build.

    Higher changeset wins, then SUCCESS over anything else, then the newer
    timestamp. The build number only breaks exact ties.
    """
    return (changeset_rank(build.version), build.is_success, build.timestamp, build.number)


def offer_build(pointers: BuildPointers, build: BuildRecord, track_oldest: bool = False):
    """Fold one build into a family's pointers."""
    if pointers.current is None or replacement_rank(build) > replacement_rank(pointers.current):
        pointers.current = build

    if not build.is_success:
        return
    if pointers.success is None or (build.timestamp, build.number) > (
        pointers.success.timestamp,
        pointers.success.number,
    ):
        pointers.success = build
    if track_oldest and (
        pointers.oldest_success is None
        or (build.timestamp, build.number) < (pointers.oldest_success.timestamp, pointers.oldest_success.number)
    ):
        pointers.oldest_success = build


def first_line(message: str | None) -> str:
    return (message or "").split("\n", 1)[0]


def merge_commits(*groups: Iterable[CommitInfo]) -> list[CommitInfo]:
    """Combine commit lists newest first, keeping one entry per (message, author)."""
    pool = [c for group in groups for c in group]
    pool.sort(key=lambda c: (-c.timestamp, c.version or "", c.message, c.author))
    seen: set[tuple[str, str]] = set()
    merged = []
    for commit in pool:
        key = (commit.message, commit.author)
        if key in seen:
            continue
        seen.add(key)
        merged.append(commit)
    return merged


def _branch_commits(build: BuildRecord) -> list[CommitInfo]:
    return [
        CommitInfo(
            message=first_line(c.message),
            author=c.author or "",
            version=build.version,
            timestamp=build.timestamp,
        )
        for c in build.commits
    ]


def _newest(records: Iterable[BuildRecord | None]) -> BuildRecord | None:
    present = [r for r in records if r is not None]
    if not present:
        return None
    return max(present, key=lambda r: (r.timestamp, r.number))


def _finalize(branch: Branch, commits: list[CommitInfo]):
    branch.all_commits = merge_commits(commits)

    head = _newest([branch.ios.dev.current, branch.android.dev.current])
    if head is None:
        head = _newest(
            [branch.builds(p).family(f).current for p in ("ios", "android") for f in BUILD_FAMILIES]
        )
    if head is None:
        return
    branch.timestamp = head.timestamp
    branch.version = head.version
    branch.download_url = head.download_url
    branch.commits = [
        CommitInfo(message=first_line(c.message), author=c.author or "")
        for c in head.commits[:BRANCH_COMMIT_PREVIEW]
    ]


def sort_branches(branches: Iterable[Branch]) -> list[Branch]:
    """``main`` first, then newest activity, then name."""
    return sorted(branches, key=lambda b: (b.name != MAIN_BRANCH, -b.timestamp, b.name))


def group_builds_by_branch(
    ios_builds: Iterable[BuildRecord],
    android_builds: Iterable[BuildRecord],
) -> list[Branch]:
    """Group both platforms' builds into Branch aggregates.

    Pure and order-independent: the same builds in any order produce the
    same branches.
    """
    branches: dict[str, Branch] = {}
    commits: dict[str, list[CommitInfo]] = {}

    for platform, builds in (("ios", ios_builds), ("android", android_builds)):
        for build in builds:
            name = build.branch or MAIN_BRANCH
            branch = branches.get(name)
            if branch is None:
                branch = branches[name] = Branch(name=name)
                commits[name] = []

            family = build_family(build.build_type)
            pointers = branch.builds(platform).family(family)
            offer_build(pointers, build, track_oldest=family == "dev")
            commits[name].extend(_branch_commits(build))

    for name, branch in branches.items():
        _finalize(branch, commits[name])

    return sort_branches(branches.values())
