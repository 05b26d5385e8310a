"""The process-wide dashboard state owner."""

import logging
from datetime import datetime, timezone

from release_dashboard.core.tracks import StoreWebhookStatus
from release_dashboard.state.models import BUILD_FAMILIES, PLATFORMS, CacheMeta, CacheRoot, Project

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class DashboardState:
    """Owns the cache root.

    Readers call ``snapshot()`` or walk ``root``; the orchestrator and the
    apply functions are the only writers. ``projects`` is swapped as a whole
    list so a reader between awaits never sees a half-built project list.
    """

    def __init__(self, root: CacheRoot | None = None):
        self.root = root or CacheRoot()
        # "job:branch" -> status reported by the store webhook
        self.store_status: dict[str, dict[str, StoreWebhookStatus]] = {}

    @property
    def projects(self) -> list[Project]:
        return self.root.projects

    @property
    def meta(self) -> CacheMeta:
        return self.root.meta

    def has_cache(self) -> bool:
        return bool(self.root.meta.job_build_numbers)

    def find_project(self, project_id: str) -> Project | None:
        return next((p for p in self.root.projects if p.id == project_id), None)

    def is_invalid(self) -> bool:
        """True when a previous cycle left state unfit for an incremental diff."""
        for project in self.root.projects:
            if not project.branches:
                logger.info("Cache invalid: %s has no branches", project.id)
                return True
            for branch in project.branches:
                for platform in PLATFORMS:
                    builds = branch.builds(platform)
                    for family in BUILD_FAMILIES:
                        current = builds.family(family).current
                        if current is not None and current.is_success and current.version is None:
                            logger.info(
                                "Cache invalid: %s/%s %s %s succeeded without a version",
                                project.id, branch.name, platform, family,
                            )
                            return True
        return False

    def replace_projects(self, projects: list[Project], job_build_numbers: dict[str, int], full: bool):
        self.root.projects = projects
        self.root.meta.job_build_numbers = dict(job_build_numbers)
        if full:
            self.root.meta.last_full_refresh = utc_now()
        self.touch()

    def touch(self):
        self.root.last_updated = utc_now()

    def load(self, root: CacheRoot):
        self.root = root

    def record_store_status(self, job_name: str, branch: str, store: str, status: StoreWebhookStatus):
        self.store_status.setdefault(f"{job_name}:{branch}", {})[store] = status

    def store_status_for(self, job_name: str, branch: str) -> dict[str, StoreWebhookStatus]:
        return self.store_status.get(f"{job_name}:{branch}", {})

    def snapshot(self) -> dict:
        return self.root.to_dict()
