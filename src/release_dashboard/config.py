"""Configuration loading from a JSON document plus environment overrides.

The base document comes from ``CONFIG_JSON`` or, when unset, from the file
at ``RDASH_CONFIG_PATH`` (default ``./config.json``). Individual environment
variables then override secrets and dashboard settings.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from release_dashboard.core.versions import slugify
from release_dashboard.state.models import Job, Project

logger = logging.getLogger(__name__)

DEFAULT_BETA_GROUP = "Alpha"


def _load_base_document() -> dict:
    if raw := os.environ.get("CONFIG_JSON"):
        try:
            data = json.loads(raw)
            logger.info("Config loaded from CONFIG_JSON")
            return data
        except json.JSONDecodeError as e:
            logger.error("Failed to parse CONFIG_JSON: %s", e)
            return {}

    path = Path(os.environ.get("RDASH_CONFIG_PATH", "config.json"))
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
        logger.info("Config loaded from %s", path)
        return data
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Failed to load %s: %s", path, e)
        return {}


def _json_env(name: str):
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse %s as JSON: %s", name, e)
        return None


@dataclass
class Config:
    jenkins_base_url: str = ""
    jenkins_username: str = ""
    jenkins_api_token: str = ""

    asc_key_id: str | None = None
    asc_issuer_id: str | None = None
    asc_key_path: str | None = None
    asc_key_content: str | None = None

    google_play_key_path: str | None = None
    google_play_key_content: str | None = None
    analytics_key_path: str | None = None

    slack_bot_token: str | None = None
    slack_channel: str | None = None

    jobs: list[Job] = field(default_factory=list)
    projects: dict[str, dict] = field(default_factory=dict)
    tracks: list[dict] = field(default_factory=list)

    refresh_interval: float = 60.0
    branch_history_days: int = 30
    source_timeout: float = 30.0
    cache_path: Path = field(default_factory=lambda: Path.cwd() / "data" / "build-cache.json")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        base = _load_base_document()
        jenkins = base.get("jenkins") or {}
        asc = base.get("appStoreConnect") or {}
        play = base.get("googlePlay") or {}
        slack = base.get("slack") or {}

        config = cls(
            jenkins_base_url=os.environ.get("JENKINS_BASE_URL") or jenkins.get("baseUrl") or "",
            jenkins_username=os.environ.get("JENKINS_USERNAME") or jenkins.get("username") or "",
            jenkins_api_token=os.environ.get("JENKINS_API_TOKEN") or jenkins.get("apiToken") or "",
            asc_key_id=os.environ.get("ASC_KEY_ID") or asc.get("keyId"),
            asc_issuer_id=os.environ.get("ASC_ISSUER_ID") or asc.get("issuerId"),
            asc_key_path=os.environ.get("ASC_KEY_PATH") or asc.get("keyPath"),
            asc_key_content=os.environ.get("ASC_KEY_CONTENT"),
            google_play_key_path=os.environ.get("GOOGLE_PLAY_KEY_PATH") or play.get("jsonKeyPath"),
            google_play_key_content=os.environ.get("GOOGLE_PLAY_KEY_CONTENT"),
            analytics_key_path=os.environ.get("ANALYTICS_KEY_PATH") or base.get("analyticsKeyPath"),
            slack_bot_token=os.environ.get("SLACK_BOT_TOKEN") or slack.get("botToken"),
            slack_channel=os.environ.get("SLACK_CHANNEL") or slack.get("channel"),
            tracks=_json_env("TRACKS") or base.get("tracks") or [],
            projects=_json_env("PROJECTS") or base.get("projects") or {},
        )

        raw_jobs = _json_env("JOBS") or base.get("jobs") or []
        for entry in raw_jobs:
            try:
                config.jobs.append(Job.from_dict(entry))
            except KeyError as e:
                logger.warning("Skipping job entry missing %s: %s", e, entry)

        if interval := os.environ.get("REFRESH_INTERVAL") or base.get("refreshInterval"):
            config.refresh_interval = float(interval)

        if days := os.environ.get("BRANCH_HISTORY_DAYS") or base.get("branchHistoryDays"):
            config.branch_history_days = int(days)

        if timeout := os.environ.get("RDASH_SOURCE_TIMEOUT"):
            config.source_timeout = float(timeout)

        if cache := os.environ.get("RDASH_CACHE_PATH") or base.get("cachePath"):
            config.cache_path = Path(cache)

        if level := os.environ.get("RDASH_LOG_LEVEL"):
            config.log_level = level.upper()

        if not config.jenkins_base_url:
            logger.warning("JENKINS_BASE_URL not configured")
        if not config.jenkins_api_token:
            logger.warning("JENKINS_API_TOKEN not configured")

        return config

    @property
    def analytics_key(self) -> tuple[str | None, str | None]:
        """Analytics uses its own key when set, else the Google Play service account."""
        if self.analytics_key_path:
            return self.analytics_key_path, None
        return self.google_play_key_path, self.google_play_key_content

    @property
    def ios_beta_group(self) -> str:
        for track in self.tracks:
            if track.get("id") == "storeAlpha" and track.get("iosBetaGroupName"):
                return track["iosBetaGroupName"]
        return DEFAULT_BETA_GROUP

    def project_settings(self, display_name: str) -> dict:
        return self.projects.get(display_name) or {}

    def analytics_property(self, display_name: str) -> str | None:
        settings = self.project_settings(display_name)
        return settings.get("analyticsPropertyId") or settings.get("firebasePropertyId")

    def build_projects(self) -> list[Project]:
        """Group jobs by display name into projects, in first-seen order."""
        projects: dict[str, Project] = {}
        for job in self.jobs:
            project = projects.get(job.display_name)
            if project is None:
                settings = self.project_settings(job.display_name)
                project = Project(
                    id=slugify(job.display_name),
                    display_name=job.display_name,
                    icon_url=settings.get("iconUrl"),
                )
                projects[job.display_name] = project
            project.jobs.append(job)
        return list(projects.values())


def get_config() -> Config:
    return Config.from_env()
